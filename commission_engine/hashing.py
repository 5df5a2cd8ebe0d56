"""Content hashing for hierarchy chains and split configurations.

Digests are SHA-256 over a canonical JSON form. The hasher keeps the
digest -> canonical input table for the lifetime of one run so that a
collision (same digest, different input) is detected instead of silently
merging two structures.
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Iterable

from commission_engine.errors import HashCollision
from commission_engine.models import HierarchyTier, SplitParticipant

logger = logging.getLogger(__name__)


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sha256_hex(canonical: str) -> str:
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest().upper()


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def canonical_tier(tier: HierarchyTier) -> dict[str, Any]:
    broker = _clean(tier.broker_id) or ""
    paid = _clean(tier.paid_broker_id)
    if paid == broker:
        paid = None
    out: dict[str, Any] = {
        "level": int(tier.level),
        "broker": broker,
        "schedule": _clean(tier.schedule_code),
        "paid": paid,
    }
    if paid is not None and tier.assigned_percent is not None:
        out["assigned"] = round(float(tier.assigned_percent), 4)
    return out


class StructureHasher:
    def __init__(self) -> None:
        self._inputs: dict[str, str] = {}

    @property
    def entries(self) -> dict[str, str]:
        return dict(self._inputs)

    def __len__(self) -> int:
        return len(self._inputs)

    def digest(self, canonical: str, context: str = "") -> str:
        value = sha256_hex(canonical)
        existing = self._inputs.get(value)
        if existing is None:
            self._inputs[value] = canonical
        elif existing != canonical:
            logger.error("hash collision on %s (%s)", value, context or "no context")
            raise HashCollision(value, existing, canonical, context)
        return value

    def hash_tiers(self, tiers: Iterable[HierarchyTier], context: str = "") -> str:
        payload = {"tiers": [canonical_tier(t) for t in tiers]}
        return self.digest(canonical_json(payload), context)

    def hash_config(self, splits: Iterable[SplitParticipant], context: str = "") -> str:
        payload = {
            "splits": [
                {
                    "seq": int(s.split_sequence),
                    "pct": round(float(s.split_percent), 4),
                    "hierarchy": s.hierarchy_hash,
                }
                for s in splits
            ]
        }
        return self.digest(canonical_json(payload), context)


class IdAllocator:
    """Run-scoped, deterministic short ids derived from content digests.

    The same (prefix, digest) always returns the same id; two digests whose
    short forms clash get a numeric suffix in first-seen order.
    """

    def __init__(self, width: int = 12) -> None:
        self.width = width
        self._by_digest: dict[tuple[str, str], str] = {}
        self._owners: dict[str, str] = {}

    def allocate(self, prefix: str, digest: str) -> str:
        key = (prefix, digest)
        if key in self._by_digest:
            return self._by_digest[key]
        base = f"{prefix}-{digest[: self.width]}"
        candidate = base
        seq = 1
        while candidate in self._owners and self._owners[candidate] != digest:
            seq += 1
            candidate = f"{base}-{seq}"
        self._owners[candidate] = digest
        self._by_digest[key] = candidate
        return candidate
