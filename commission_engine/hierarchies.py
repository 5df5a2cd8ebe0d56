"""Hierarchy and split materialization.

One Hierarchy (+ version + participants) is emitted per distinct hierarchy
hash, however many proposals reference it. Each version then gets its state
rules, one hierarchy split per product and one split distribution per active
participant.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable

from commission_engine.errors import DataQualityGap
from commission_engine.extraction import HierarchyUsage
from commission_engine.hashing import IdAllocator
from commission_engine.loader import broker_number
from commission_engine.models import (
    Hierarchy,
    HierarchyParticipant,
    HierarchySplit,
    HierarchyTier,
    HierarchyVersion,
    Proposal,
    SplitDistribution,
    StateRule,
    StateRuleState,
)

logger = logging.getLogger(__name__)

STATE_NAMES = {
    "AL": "Alabama", "AK": "Alaska", "AZ": "Arizona", "AR": "Arkansas",
    "CA": "California", "CO": "Colorado", "CT": "Connecticut", "DE": "Delaware",
    "FL": "Florida", "GA": "Georgia", "HI": "Hawaii", "ID": "Idaho",
    "IL": "Illinois", "IN": "Indiana", "IA": "Iowa", "KS": "Kansas",
    "KY": "Kentucky", "LA": "Louisiana", "ME": "Maine", "MD": "Maryland",
    "MA": "Massachusetts", "MI": "Michigan", "MN": "Minnesota", "MS": "Mississippi",
    "MO": "Missouri", "MT": "Montana", "NE": "Nebraska", "NV": "Nevada",
    "NH": "New Hampshire", "NJ": "New Jersey", "NM": "New Mexico", "NY": "New York",
    "NC": "North Carolina", "ND": "North Dakota", "OH": "Ohio", "OK": "Oklahoma",
    "OR": "Oregon", "PA": "Pennsylvania", "RI": "Rhode Island", "SC": "South Carolina",
    "SD": "South Dakota", "TN": "Tennessee", "TX": "Texas", "UT": "Utah",
    "VT": "Vermont", "VA": "Virginia", "WA": "Washington", "WV": "West Virginia",
    "WI": "Wisconsin", "WY": "Wyoming", "DC": "District of Columbia",
}

UNIVERSAL_RULE = "ALL"


def state_name(code: str) -> str:
    return STATE_NAMES.get(code, code)


@dataclass
class HierarchyEntities:
    hierarchies: list[Hierarchy] = field(default_factory=list)
    versions: list[HierarchyVersion] = field(default_factory=list)
    participants: list[HierarchyParticipant] = field(default_factory=list)
    state_rules: list[StateRule] = field(default_factory=list)
    state_rule_states: list[StateRuleState] = field(default_factory=list)
    hierarchy_splits: list[HierarchySplit] = field(default_factory=list)
    split_distributions: list[SplitDistribution] = field(default_factory=list)
    ids_by_hash: dict[str, str] = field(default_factory=dict)
    gaps: list[DataQualityGap] = field(default_factory=list)

    def extend(self, other: "HierarchyEntities") -> None:
        self.hierarchies.extend(other.hierarchies)
        self.versions.extend(other.versions)
        self.participants.extend(other.participants)
        self.state_rules.extend(other.state_rules)
        self.state_rule_states.extend(other.state_rule_states)
        self.hierarchy_splits.extend(other.hierarchy_splits)
        self.split_distributions.extend(other.split_distributions)
        self.ids_by_hash.update(other.ids_by_hash)
        self.gaps.extend(other.gaps)


def resolve_schedule(code: str | None, schedules: dict[str, int]) -> int | None:
    if code is None:
        return None
    return schedules.get(code.strip())


def build_participants(
    hierarchy_id: str,
    version_id: str,
    tiers: Iterable[HierarchyTier],
    schedules: dict[str, int],
    brokers: dict[str, int] | None = None,
) -> list[HierarchyParticipant]:
    participants: list[HierarchyParticipant] = []
    used: set[str] = set()
    for tier in tiers:
        participant_id = f"{hierarchy_id}-L{tier.level}"
        suffix = 1
        while participant_id in used:
            suffix += 1
            participant_id = f"{hierarchy_id}-L{tier.level}-{suffix}"
        used.add(participant_id)
        participants.append(
            HierarchyParticipant(
                id=participant_id,
                hierarchy_version_id=version_id,
                level=tier.level,
                broker_id=tier.broker_id,
                broker_number=broker_number(tier.broker_id, brokers),
                schedule_code=tier.schedule_code,
                schedule_id=resolve_schedule(tier.schedule_code, schedules),
                broker_name=tier.broker_name,
                paid_broker_id=tier.paid_broker_id,
            )
        )
    return participants


def build_state_rules(
    version_id: str,
    participants: list[HierarchyParticipant],
    usage: HierarchyUsage,
    out: HierarchyEntities,
) -> None:
    """State rules, hierarchy splits and distributions for one version.

    One observed state (or none) gives a single universal rule without state
    associations; k states give k rules with one association each.
    """
    active = [p for p in participants if p.is_active]
    states = sorted(usage.states)
    if len(states) <= 1:
        rules = [(UNIVERSAL_RULE, None, sorted(usage.products))]
    else:
        rules = [(code, code, sorted(usage.products_by_state.get(code, ()))) for code in states]

    for sort_order, (short_name, state_code, products) in enumerate(rules, start=1):
        rule_id = f"SR-{version_id}-{short_name}"
        out.state_rules.append(
            StateRule(
                id=rule_id,
                hierarchy_version_id=version_id,
                short_name=short_name,
                name="All States" if state_code is None else state_name(state_code),
                applies_to_all_states=state_code is None,
                sort_order=sort_order,
            )
        )
        if state_code is not None:
            out.state_rule_states.append(
                StateRuleState(
                    id=f"SRS-{rule_id}",
                    state_rule_id=rule_id,
                    state_code=state_code,
                    state_name=state_name(state_code),
                )
            )
        for product_order, product_code in enumerate(products, start=1):
            split_id = f"HS-{rule_id}-{product_code}"
            out.hierarchy_splits.append(
                HierarchySplit(
                    id=split_id,
                    state_rule_id=rule_id,
                    product_code=product_code,
                    sort_order=product_order,
                )
            )
            _distribute(split_id, active, out)


def _distribute(split_id: str, active: list[HierarchyParticipant], out: HierarchyEntities) -> None:
    if not active:
        return
    # Equal division is the only apportionment signal the source data carries.
    percentage = round(100.0 / len(active), 4)
    for participant in active:
        distribution_id = f"SD-{split_id}-L{participant.id.rsplit('-L', 1)[-1]}"
        out.split_distributions.append(
            SplitDistribution(
                id=distribution_id,
                hierarchy_split_id=split_id,
                hierarchy_participant_id=participant.id,
                broker_number=participant.broker_number,
                percentage=percentage,
                schedule_code=participant.schedule_code,
                schedule_id=participant.schedule_id,
            )
        )
        if participant.schedule_id is None:
            out.gaps.append(
                DataQualityGap(
                    kind="unresolved_schedule",
                    entity_type="split_distribution",
                    entity_id=distribution_id,
                    detail=f"schedule {participant.schedule_code!r} has no numeric id",
                )
            )


def materialize_hierarchies(
    proposals: Iterable[Proposal],
    usage: dict[str, HierarchyUsage],
    schedules: dict[str, int],
    brokers: dict[str, int] | None = None,
    allocator: IdAllocator | None = None,
) -> HierarchyEntities:
    allocator = allocator or IdAllocator()
    out = HierarchyEntities()

    # First reference wins for structure; the earliest window start wins for dates.
    first_seen: dict[str, tuple[Proposal, tuple[HierarchyTier, ...]]] = {}
    starts: dict[str, date] = {}
    for proposal in proposals:
        for split in proposal.splits:
            h = split.hierarchy_hash
            if h not in first_seen:
                first_seen[h] = (proposal, split.tiers)
                starts[h] = proposal.effective_from
            elif proposal.effective_from < starts[h]:
                starts[h] = proposal.effective_from

    for h, (proposal, tiers) in first_seen.items():
        hierarchy_id = allocator.allocate("H", h)
        version_id = f"{hierarchy_id}-V1"
        writing = tiers[0] if tiers else None
        out.hierarchies.append(
            Hierarchy(
                id=hierarchy_id,
                hierarchy_hash=h,
                name=f"Hierarchy {writing.broker_id if writing else 'empty'}",
                writing_broker_id=writing.broker_id if writing else "",
                current_version_id=version_id,
                effective_date=starts[h],
                group_id=proposal.group_id,
            )
        )
        out.versions.append(
            HierarchyVersion(id=version_id, hierarchy_id=hierarchy_id, effective_from=starts[h])
        )
        participants = build_participants(hierarchy_id, version_id, tiers, schedules, brokers)
        out.participants.extend(participants)
        build_state_rules(version_id, participants, usage.get(h, HierarchyUsage()), out)
        out.ids_by_hash[h] = hierarchy_id

    unresolved = sum(1 for g in out.gaps if g.kind == "unresolved_schedule")
    if unresolved:
        logger.warning(
            "%d of %d split distributions have no resolved schedule",
            unresolved,
            len(out.split_distributions),
        )
    logger.info(
        "materialized %d hierarchies, %d participants, %d state rules, %d splits, %d distributions",
        len(out.hierarchies),
        len(out.participants),
        len(out.state_rules),
        len(out.hierarchy_splits),
        len(out.split_distributions),
    )
    return out
