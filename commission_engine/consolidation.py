"""Stage-one orchestration: certificate rows -> consolidated commission entities."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Iterable

from commission_engine.assignments import build_commission_assignments
from commission_engine.config import EngineSettings
from commission_engine.errors import DataQualityGap
from commission_engine.extraction import extract_selection_criteria, hierarchy_usage
from commission_engine.fallback import build_fallback_assignments
from commission_engine.hashing import IdAllocator, StructureHasher
from commission_engine.hierarchies import HierarchyEntities, materialize_hierarchies
from commission_engine.models import (
    CertificateSplitRow,
    CommissionAssignmentRecipient,
    CommissionAssignmentVersion,
    PolicyHierarchyAssignment,
    PolicyHierarchyParticipant,
    PremiumSplitParticipant,
    PremiumSplitVersion,
    Proposal,
    ProposalKeyMapping,
    SelectionCriteria,
)
from commission_engine.proposals import (
    INVALID_GROUP_REASON,
    build_key_mappings,
    build_premium_splits,
    build_proposals,
    partition_by_group,
)

logger = logging.getLogger(__name__)


@dataclass
class ConsolidationResult:
    criteria: list[SelectionCriteria] = field(default_factory=list)
    proposals: list[Proposal] = field(default_factory=list)
    key_mappings: list[ProposalKeyMapping] = field(default_factory=list)
    premium_split_versions: list[PremiumSplitVersion] = field(default_factory=list)
    premium_split_participants: list[PremiumSplitParticipant] = field(default_factory=list)
    hierarchies: HierarchyEntities = field(default_factory=HierarchyEntities)
    fallback_assignments: list[PolicyHierarchyAssignment] = field(default_factory=list)
    fallback_participants: list[PolicyHierarchyParticipant] = field(default_factory=list)
    assignment_versions: list[CommissionAssignmentVersion] = field(default_factory=list)
    assignment_recipients: list[CommissionAssignmentRecipient] = field(default_factory=list)
    gaps: list[DataQualityGap] = field(default_factory=list)
    hash_entries: dict[str, str] = field(default_factory=dict)
    stats: dict[str, Any] = field(default_factory=dict)

    def tables(self) -> dict[str, list[Any]]:
        """Entity lists keyed by their storage table name."""
        h = self.hierarchies
        return {
            "proposals": self.proposals,
            "proposal_key_mappings": self.key_mappings,
            "premium_split_versions": self.premium_split_versions,
            "premium_split_participants": self.premium_split_participants,
            "hierarchies": h.hierarchies,
            "hierarchy_versions": h.versions,
            "hierarchy_participants": h.participants,
            "state_rules": h.state_rules,
            "state_rule_states": h.state_rule_states,
            "hierarchy_splits": h.hierarchy_splits,
            "split_distributions": h.split_distributions,
            "policy_hierarchy_assignments": self.fallback_assignments,
            "policy_hierarchy_participants": self.fallback_participants,
            "commission_assignment_versions": self.assignment_versions,
            "commission_assignment_recipients": self.assignment_recipients,
        }


def coverage_stats(result: ConsolidationResult) -> dict[str, Any]:
    distributions = result.hierarchies.split_distributions
    resolved = sum(1 for d in distributions if d.schedule_id is not None)
    return {
        "certificates": len(result.criteria),
        "proposals": len(result.proposals),
        "continuation_proposals": sum(1 for p in result.proposals if p.continues_id),
        "hierarchies": sum(1 for h in result.hierarchies.hierarchies if not h.is_fallback),
        "fallback_hierarchies": sum(1 for h in result.hierarchies.hierarchies if h.is_fallback),
        "fallback_assignments": len(result.fallback_assignments),
        "commission_assignments": len(result.assignment_versions),
        "hash_entries": len(result.hash_entries),
        "split_distributions": len(distributions),
        "distribution_coverage_pct": round(resolved / len(distributions) * 100, 2) if distributions else 100.0,
        "gaps": len(result.gaps),
    }


def consolidate(
    rows: Iterable[CertificateSplitRow],
    schedules: dict[str, int],
    brokers: dict[str, int] | None = None,
    settings: EngineSettings | None = None,
) -> ConsolidationResult:
    """Run extraction, proposal grouping, materialization and fallback.

    Only :class:`~commission_engine.errors.HashCollision` escapes; every
    other anomaly is kept on ``result.gaps``.
    """
    settings = settings or EngineSettings()
    started = time.perf_counter()
    hasher = StructureHasher()
    allocator = IdAllocator()

    criteria = extract_selection_criteria(rows, hasher)
    conformant, diverted = partition_by_group(criteria)
    logger.info(
        "partitioned %d certificates: %d conformant, %d diverted to fallback",
        len(criteria),
        len(conformant),
        len(diverted),
    )

    proposals = build_proposals(conformant)
    key_mappings = build_key_mappings(proposals)
    hierarchies = materialize_hierarchies(
        proposals, hierarchy_usage(conformant), schedules, brokers, allocator
    )
    psv, psp = build_premium_splits(proposals, hierarchies.ids_by_hash, brokers)
    cav, car = build_commission_assignments(proposals, brokers)
    pha, php, fallback_entities = build_fallback_assignments(diverted, schedules, brokers)

    gaps = [
        DataQualityGap(
            kind="invalid_group",
            entity_type="certificate",
            entity_id=c.certificate_id,
            detail=f"{INVALID_GROUP_REASON}: {c.group_id!r}",
        )
        for c in diverted
    ]
    unit = settings.split_total_unit
    for c in criteria:
        total = c.total_split_percent
        if total <= 0 or round(total % unit, 4) not in (0.0, unit):
            gaps.append(
                DataQualityGap(
                    kind="split_total_mismatch",
                    entity_type="certificate",
                    entity_id=c.certificate_id,
                    detail=f"split percents total {total}",
                )
            )
    for p in proposals:
        if not p.has_window:
            gaps.append(
                DataQualityGap(
                    kind="superseded_proposal",
                    entity_type="proposal",
                    entity_id=p.id,
                    detail=f"another configuration of group {p.group_id} starts on {p.effective_from}",
                )
            )
    hierarchies.extend(fallback_entities)
    gaps.extend(hierarchies.gaps)

    result = ConsolidationResult(
        criteria=criteria,
        proposals=proposals,
        key_mappings=key_mappings,
        premium_split_versions=psv,
        premium_split_participants=psp,
        hierarchies=hierarchies,
        fallback_assignments=pha,
        fallback_participants=php,
        assignment_versions=cav,
        assignment_recipients=car,
        gaps=gaps,
        hash_entries=hasher.entries,
    )
    result.stats = coverage_stats(result)
    if gaps:
        counts: dict[str, int] = {}
        for gap in gaps:
            counts[gap.kind] = counts.get(gap.kind, 0) + 1
        logger.warning("data quality gaps: %s", counts)
    logger.info("consolidation finished in %.2fs: %s", time.perf_counter() - started, result.stats)
    return result
