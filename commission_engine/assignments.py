"""Commission assignments derived from paid-broker redirects on proposal tiers."""

from __future__ import annotations

import logging
from typing import Iterable

from commission_engine.loader import broker_number
from commission_engine.models import (
    CommissionAssignmentRecipient,
    CommissionAssignmentVersion,
    Proposal,
)

logger = logging.getLogger(__name__)


def build_commission_assignments(
    proposals: Iterable[Proposal],
    brokers: dict[str, int] | None = None,
) -> tuple[list[CommissionAssignmentVersion], list[CommissionAssignmentRecipient]]:
    """One version + recipient per distinct (proposal, source, recipient).

    A tier is a redirect when its paid broker is set and differs from the
    earning broker. The assigned share defaults to 100% unless the row
    carried an explicit ``assigned_percent``.
    """
    versions: list[CommissionAssignmentVersion] = []
    recipients: list[CommissionAssignmentRecipient] = []
    for proposal in proposals:
        seen: set[tuple[str, str]] = set()
        for split in proposal.splits:
            for tier in split.tiers:
                if not tier.is_redirected:
                    continue
                source = tier.broker_id.strip()
                recipient = (tier.paid_broker_id or "").strip()
                if (source, recipient) in seen:
                    continue
                seen.add((source, recipient))

                percent = 100.0 if tier.assigned_percent is None else round(tier.assigned_percent, 4)
                version_id = f"CAV-{proposal.id}-{source}-{recipient}"
                versions.append(
                    CommissionAssignmentVersion(
                        id=version_id,
                        proposal_id=proposal.id,
                        source_broker_id=source,
                        source_broker_number=broker_number(source, brokers),
                        effective_from=proposal.effective_from,
                        effective_to=proposal.effective_to,
                        total_assigned_percent=percent,
                        source_broker_name=tier.broker_name,
                    )
                )
                recipients.append(
                    CommissionAssignmentRecipient(
                        id=f"CAR-{proposal.id}-{source}-{recipient}",
                        version_id=version_id,
                        recipient_broker_id=recipient,
                        recipient_broker_number=broker_number(recipient, brokers),
                        percentage=percent,
                        recipient_name=tier.paid_broker_name,
                    )
                )

    logger.info("built %d commission assignment versions", len(versions))
    return versions, recipients
