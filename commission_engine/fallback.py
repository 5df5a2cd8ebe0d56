"""Policy hierarchy assignments for certificates that cannot join a proposal.

Nothing here is deduplicated: every split of every diverted certificate gets
its own hierarchy, version and participants, so the number of fallback
hierarchies always equals the number of fallback assignments.
"""

from __future__ import annotations

import logging
from typing import Iterable

from commission_engine.extraction import HierarchyUsage
from commission_engine.hierarchies import HierarchyEntities, build_participants, build_state_rules
from commission_engine.loader import broker_number
from commission_engine.models import (
    Hierarchy,
    HierarchyVersion,
    PolicyHierarchyAssignment,
    PolicyHierarchyParticipant,
    SelectionCriteria,
)
from commission_engine.proposals import INVALID_GROUP_REASON

logger = logging.getLogger(__name__)


def _usage_for(c: SelectionCriteria) -> HierarchyUsage:
    usage = HierarchyUsage(products={c.product_code})
    if c.situs_state:
        usage.states.add(c.situs_state)
        usage.products_by_state[c.situs_state].add(c.product_code)
    return usage


def build_fallback_assignments(
    diverted: Iterable[SelectionCriteria],
    schedules: dict[str, int],
    brokers: dict[str, int] | None = None,
    reason: str = INVALID_GROUP_REASON,
) -> tuple[list[PolicyHierarchyAssignment], list[PolicyHierarchyParticipant], HierarchyEntities]:
    assignments: list[PolicyHierarchyAssignment] = []
    assignment_participants: list[PolicyHierarchyParticipant] = []
    entities = HierarchyEntities()

    for c in diverted:
        for split in c.splits:
            suffix = f"{c.certificate_id}-{split.split_sequence}"
            hierarchy_id = f"H-PHA-{suffix}"
            version_id = f"{hierarchy_id}-V1"
            assignment_id = f"PHA-{suffix}"

            entities.hierarchies.append(
                Hierarchy(
                    id=hierarchy_id,
                    hierarchy_hash=split.hierarchy_hash,
                    name=f"Fallback {c.certificate_id} split {split.split_sequence}",
                    writing_broker_id=split.writing_broker_id,
                    current_version_id=version_id,
                    effective_date=c.effective_date,
                    group_id=c.group_id,
                    is_fallback=True,
                )
            )
            entities.versions.append(
                HierarchyVersion(id=version_id, hierarchy_id=hierarchy_id, effective_from=c.effective_date)
            )
            participants = build_participants(hierarchy_id, version_id, split.tiers, schedules, brokers)
            entities.participants.extend(participants)
            build_state_rules(version_id, participants, _usage_for(c), entities)

            assignments.append(
                PolicyHierarchyAssignment(
                    id=assignment_id,
                    policy_id=c.certificate_id,
                    hierarchy_id=hierarchy_id,
                    split_sequence=split.split_sequence,
                    split_percent=split.split_percent,
                    writing_broker_id=split.writing_broker_id,
                    writing_broker_number=broker_number(split.writing_broker_id, brokers),
                    reason=reason,
                    group_id=c.group_id,
                )
            )
            for participant in participants:
                assignment_participants.append(
                    PolicyHierarchyParticipant(
                        id=f"PHP-{suffix}-L{participant.id.rsplit('-L', 1)[-1]}",
                        assignment_id=assignment_id,
                        level=participant.level,
                        broker_id=participant.broker_id,
                        schedule_code=participant.schedule_code,
                        broker_name=participant.broker_name,
                    )
                )

    if assignments:
        logger.warning(
            "%d policy hierarchy assignments created for non-conformant certificates",
            len(assignments),
        )
    return assignments, assignment_participants, entities
