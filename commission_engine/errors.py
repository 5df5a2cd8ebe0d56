from __future__ import annotations

from dataclasses import dataclass


class HashCollision(ValueError):
    """Two different canonical inputs produced the same digest.

    This stops the run: with SHA-256 it means the canonical form is broken,
    not that the data is unlucky.
    """

    def __init__(self, digest: str, existing: str, incoming: str, context: str = "") -> None:
        self.digest = digest
        self.existing = existing
        self.incoming = incoming
        self.context = context
        where = f" for {context}" if context else ""
        super().__init__(
            f"hash collision detected{where}: {digest}\nexisting: {existing}\nincoming: {incoming}"
        )


class SnapshotError(ValueError):
    def __init__(self, path: str, line: int, message: str) -> None:
        self.path = path
        self.line = line
        super().__init__(f"{path}:{line}: {message}")


@dataclass(frozen=True)
class DataQualityGap:
    kind: str
    entity_type: str
    entity_id: str
    detail: str
