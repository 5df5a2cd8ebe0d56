"""Cascading commission calculation.

Eight ordered stages turn premium transactions into ledger entries. Every
stage takes the complete row list of the previous stage and returns a new
list plus the failures it found; rows are frozen and only ever copied with
``dataclasses.replace``. A transaction that fails at any stage produces no
ledger entry but always gets a traceability record.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import date
from typing import ClassVar, Iterable, Union

from commission_engine.config import EngineSettings
from commission_engine.consolidation import ConsolidationResult
from commission_engine.errors import DataQualityGap
from commission_engine.models import (
    BrokerTraceability,
    CommissionAssignmentRecipient,
    CommissionAssignmentVersion,
    GroupRecord,
    HierarchyParticipant,
    HierarchySplit,
    HierarchyVersion,
    LedgerEntry,
    PolicyHierarchyAssignment,
    PolicyRecord,
    PremiumSplitParticipant,
    PremiumTransaction,
    Proposal,
    RateTables,
    ScheduleRate,
    SplitDistribution,
    StageFailure,
    StateRule,
    Traceability,
)
from commission_engine.proposals import is_valid_group

logger = logging.getLogger(__name__)

STAGES = {
    1: "premium_context",
    2: "proposal_resolution",
    3: "splits_applied",
    4: "hierarchy_resolution",
    5: "participant_expansion",
    6: "rate_application",
    7: "commission_calculated",
    8: "assignment_applied",
}

SKIPPED_PREMIUM = "non-positive premium"


@dataclass(frozen=True)
class ResolvedSplit:
    split_sequence: int
    split_percent: float
    hierarchy_id: str


@dataclass(frozen=True)
class ProposalResolution:
    proposal_id: str
    splits: tuple[ResolvedSplit, ...]
    kind: ClassVar[str] = "proposal"


@dataclass(frozen=True)
class FallbackResolution:
    policy_id: str
    splits: tuple[ResolvedSplit, ...]
    kind: ClassVar[str] = "fallback"


Resolution = Union[ProposalResolution, FallbackResolution]


@dataclass(frozen=True)
class PipelineRow:
    transaction: PremiumTransaction
    policy: PolicyRecord
    group: GroupRecord | None
    is_first_year: bool
    basis_year: int
    resolution: Resolution | None = None
    split: ResolvedSplit | None = None
    split_premium: float = 0.0
    version: HierarchyVersion | None = None
    participant: HierarchyParticipant | None = None
    rate_percent: float = 0.0
    rate_source: str = ""
    commission: float = 0.0

    @property
    def transaction_id(self) -> str:
        return self.transaction.transaction_id

    @property
    def proposal_id(self) -> str | None:
        if isinstance(self.resolution, ProposalResolution):
            return self.resolution.proposal_id
        return None


@dataclass
class CalculationResult:
    ledger: list[LedgerEntry] = field(default_factory=list)
    traceability: list[Traceability] = field(default_factory=list)
    broker_traceability: list[BrokerTraceability] = field(default_factory=list)
    failures: list[StageFailure] = field(default_factory=list)
    gaps: list[DataQualityGap] = field(default_factory=list)
    stage_counts: dict[str, int] = field(default_factory=dict)

    def summary(self) -> dict[str, object]:
        statuses: dict[str, int] = defaultdict(int)
        for t in self.traceability:
            statuses[t.status] += 1
        return {
            "transactions": len(self.traceability),
            "ledger_entries": len(self.ledger),
            "total_commission": round(sum(e.commission_amount for e in self.ledger), 2),
            "failures": len(self.failures),
            "statuses": dict(statuses),
            "stage_counts": dict(self.stage_counts),
        }


def _anniversary(start: date) -> date:
    try:
        return start.replace(year=start.year + 1)
    except ValueError:
        # Feb 29 -> Mar 1 of the next year.
        return date(start.year + 1, 3, 1)


class PipelineIndex:
    """Lookup tables over one consolidation run, built once per calculation."""

    def __init__(self, result: ConsolidationResult, rates: RateTables | None = None) -> None:
        rates = rates or RateTables()
        self.proposals: dict[str, Proposal] = {p.id: p for p in result.proposals}

        self.mappings: dict[tuple[str, int, str, str], list[str]] = defaultdict(list)
        self.mapped_years: dict[tuple[str, str, str], set[int]] = defaultdict(set)
        for m in result.key_mappings:
            self.mappings[(m.group_id, m.effective_year, m.product_code, m.plan_code)].append(m.proposal_id)
            self.mapped_years[(m.group_id, m.product_code, m.plan_code)].add(m.effective_year)

        versions = {v.id: v for v in result.premium_split_versions}
        self.premium_splits: dict[str, list[PremiumSplitParticipant]] = defaultdict(list)
        for psp in result.premium_split_participants:
            self.premium_splits[versions[psp.version_id].proposal_id].append(psp)

        self.fallback: dict[str, list[PolicyHierarchyAssignment]] = defaultdict(list)
        for pha in result.fallback_assignments:
            self.fallback[pha.policy_id].append(pha)

        h = result.hierarchies
        self.versions: dict[str, list[HierarchyVersion]] = defaultdict(list)
        for v in h.versions:
            self.versions[v.hierarchy_id].append(v)
        self.participants: dict[str, list[HierarchyParticipant]] = defaultdict(list)
        for p in h.participants:
            self.participants[p.hierarchy_version_id].append(p)
        self.state_rules: dict[str, list[StateRule]] = defaultdict(list)
        for r in h.state_rules:
            self.state_rules[r.hierarchy_version_id].append(r)
        self.rule_states: dict[str, set[str]] = defaultdict(set)
        for s in h.state_rule_states:
            self.rule_states[s.state_rule_id].add(s.state_code)
        self.splits: dict[tuple[str, str], HierarchySplit] = {
            (s.state_rule_id, s.product_code): s for s in h.hierarchy_splits
        }
        self.distributions: dict[tuple[str, str], SplitDistribution] = {
            (d.hierarchy_split_id, d.hierarchy_participant_id): d for d in h.split_distributions
        }

        recipients: dict[str, list[CommissionAssignmentRecipient]] = defaultdict(list)
        for r in result.assignment_recipients:
            recipients[r.version_id].append(r)
        self.assignments: dict[
            tuple[str, str], list[tuple[CommissionAssignmentVersion, list[CommissionAssignmentRecipient]]]
        ] = defaultdict(list)
        for v in result.assignment_versions:
            self.assignments[(v.proposal_id, v.source_broker_id)].append((v, recipients[v.id]))

        self.certificate_rates = {(r.certificate_id, r.broker_id): r.rate for r in rates.certificate_rates}
        self.migrated_rates = {(r.broker_id, r.product_code): r.rate for r in rates.migrated_rates}
        self.schedule_rates: dict[tuple[str, str], list[ScheduleRate]] = defaultdict(list)
        for r in rates.schedule_rates:
            self.schedule_rates[(r.schedule_code.strip(), r.product_code)].append(r)

    def resolve_proposal(self, group_id: str, policy: PolicyRecord, when: date) -> Proposal | None:
        year = when.year
        ids = self.mappings.get((group_id, year, policy.product_code, policy.plan_code))
        open_only = False
        if not ids:
            years = self.mapped_years.get((group_id, policy.product_code, policy.plan_code), set())
            earlier = [y for y in years if y < year]
            if not earlier:
                return None
            ids = self.mappings[(group_id, max(earlier), policy.product_code, policy.plan_code)]
            open_only = True
        candidates = [
            self.proposals[i]
            for i in ids
            if self.proposals[i].covers(when) and not (open_only and self.proposals[i].effective_to is not None)
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda p: (p.effective_from, p.id))

    def schedule_rate(
        self,
        schedule_code: str | None,
        product_code: str,
        state: str | None,
        group_size: int | None,
        first_year: bool,
    ) -> float | None:
        if not schedule_code:
            return None
        matches: list[ScheduleRate] = []
        for r in self.schedule_rates.get((schedule_code.strip(), product_code), []):
            if r.state is not None and r.state != state:
                continue
            if group_size is not None:
                if r.group_size_from is not None and group_size < r.group_size_from:
                    continue
                if r.group_size_to is not None and group_size > r.group_size_to:
                    continue
            matches.append(r)
        # State-specific rows win over rows that apply to every state.
        matches.sort(key=lambda r: r.state is None)
        for r in matches:
            value = r.first_year_rate if first_year else r.renewal_rate
            if value is not None:
                return value
        return None

    def distribution(self, row: PipelineRow) -> SplitDistribution | None:
        rules = self.state_rules.get(row.version.id, [])
        rule = next((r for r in rules if row.policy.state in self.rule_states.get(r.id, ())), None)
        if rule is None:
            rule = next((r for r in rules if r.applies_to_all_states), None)
        if rule is None:
            return None
        split = self.splits.get((rule.id, row.policy.product_code))
        if split is None:
            return None
        return self.distributions.get((split.id, row.participant.id))


Stage = tuple[list[PipelineRow], list[StageFailure]]


def premium_context(
    premiums: Iterable[PremiumTransaction],
    policies: dict[str, PolicyRecord],
    groups: dict[str, GroupRecord],
) -> Stage:
    rows: list[PipelineRow] = []
    failures: list[StageFailure] = []
    for txn in premiums:
        if txn.premium_amount <= 0:
            failures.append(StageFailure(txn.transaction_id, 1, SKIPPED_PREMIUM))
            continue
        policy = policies.get(txn.certificate_id)
        if policy is None:
            failures.append(StageFailure(txn.transaction_id, 1, f"policy {txn.certificate_id} not found"))
            continue
        group = None
        if is_valid_group(policy.group_id):
            group_id = (policy.group_id or "").strip()
            group = groups.get(group_id)
            if group is None:
                failures.append(StageFailure(txn.transaction_id, 1, f"group {group_id} not found"))
                continue
        rows.append(
            PipelineRow(
                transaction=txn,
                policy=policy,
                group=group,
                is_first_year=txn.transaction_date < _anniversary(policy.effective_date),
                basis_year=txn.transaction_date.year,
            )
        )
    return rows, failures


def proposal_resolution(rows: list[PipelineRow], index: PipelineIndex) -> Stage:
    out: list[PipelineRow] = []
    failures: list[StageFailure] = []
    for row in rows:
        resolution: Resolution | None = None
        if row.group is not None:
            proposal = index.resolve_proposal(row.group.group_id, row.policy, row.transaction.transaction_date)
            if proposal is not None:
                resolution = ProposalResolution(
                    proposal_id=proposal.id,
                    splits=tuple(
                        ResolvedSplit(p.sequence, p.split_percent, p.hierarchy_id)
                        for p in sorted(index.premium_splits[proposal.id], key=lambda p: p.sequence)
                    ),
                )
        if resolution is None:
            phas = index.fallback.get(row.policy.policy_id)
            if phas:
                resolution = FallbackResolution(
                    policy_id=row.policy.policy_id,
                    splits=tuple(
                        ResolvedSplit(a.split_sequence, a.split_percent, a.hierarchy_id)
                        for a in sorted(phas, key=lambda a: a.split_sequence)
                    ),
                )
        if resolution is None:
            failures.append(
                StageFailure(row.transaction_id, 2, f"no proposal or fallback assignment for {row.policy.policy_id}")
            )
            continue
        out.append(replace(row, resolution=resolution))
    return out, failures


def splits_applied(
    rows: list[PipelineRow], unit: float = 100.0
) -> tuple[list[PipelineRow], list[StageFailure], list[DataQualityGap]]:
    out: list[PipelineRow] = []
    failures: list[StageFailure] = []
    gaps: list[DataQualityGap] = []
    for row in rows:
        if not row.resolution.splits:
            failures.append(StageFailure(row.transaction_id, 3, "resolution has no splits"))
            continue
        total = round(sum(s.split_percent for s in row.resolution.splits), 4)
        if total <= 0 or round(total % unit, 4) not in (0.0, unit):
            gaps.append(
                DataQualityGap(
                    kind="split_total_mismatch",
                    entity_type="premium_transaction",
                    entity_id=row.transaction_id,
                    detail=f"split percents total {total}",
                )
            )
        premium = row.transaction.premium_amount
        for split in row.resolution.splits:
            out.append(replace(row, split=split, split_premium=round(premium * split.split_percent / 100, 2)))
    return out, failures, gaps


def hierarchy_resolution(rows: list[PipelineRow], index: PipelineIndex) -> Stage:
    out: list[PipelineRow] = []
    failures: list[StageFailure] = []
    for row in rows:
        when = row.transaction.transaction_date
        active = [
            v for v in index.versions.get(row.split.hierarchy_id, []) if v.status == "active" and v.covers(when)
        ]
        if not active:
            failures.append(
                StageFailure(row.transaction_id, 4, f"no active version of {row.split.hierarchy_id} on {when}")
            )
            continue
        out.append(replace(row, version=max(active, key=lambda v: v.effective_from)))
    return out, failures


def participant_expansion(rows: list[PipelineRow], index: PipelineIndex) -> Stage:
    out: list[PipelineRow] = []
    failures: list[StageFailure] = []
    for row in rows:
        participants = [p for p in index.participants.get(row.version.id, []) if p.is_active]
        if not participants:
            failures.append(StageFailure(row.transaction_id, 5, f"{row.version.id} has no participants"))
            continue
        for participant in sorted(participants, key=lambda p: p.level):
            out.append(replace(row, participant=participant))
    return out, failures


def rate_application(rows: list[PipelineRow], index: PipelineIndex) -> Stage:
    out: list[PipelineRow] = []
    failures: list[StageFailure] = []
    for row in rows:
        broker = row.participant.broker_id
        product = row.policy.product_code
        rate = index.certificate_rates.get((row.policy.policy_id, broker))
        source = "certificate"
        if rate is None:
            rate = index.migrated_rates.get((broker, product))
            source = "migrated"
        if rate is None:
            rate = index.schedule_rate(
                row.participant.schedule_code,
                product,
                row.policy.state,
                row.group.group_size if row.group else None,
                row.is_first_year,
            )
            source = "schedule"
        if rate is None:
            failures.append(
                StageFailure(
                    row.transaction_id,
                    6,
                    f"no rate for broker {broker} schedule {row.participant.schedule_code} product {product}",
                )
            )
            continue
        out.append(replace(row, rate_percent=rate, rate_source=source))
    return out, failures


def commission_calculated(rows: list[PipelineRow], index: PipelineIndex, apply_distribution: bool = True) -> Stage:
    out: list[PipelineRow] = []
    for row in rows:
        commission = round(row.split_premium * row.rate_percent / 100, 2)
        if apply_distribution:
            distribution = index.distribution(row)
            if distribution is not None:
                commission = round(commission * distribution.percentage / 100, 2)
        out.append(replace(row, commission=commission))
    return out, []


def _entry(row: PipelineRow, entry_id: str, **overrides: object) -> LedgerEntry:
    values = dict(
        id=entry_id,
        transaction_id=row.transaction_id,
        policy_id=row.policy.policy_id,
        proposal_id=row.proposal_id,
        broker_id=row.participant.broker_id,
        broker_number=row.participant.broker_number,
        commission_amount=row.commission,
        premium_amount=row.transaction.premium_amount,
        split_premium_amount=row.split_premium,
        rate_percent=row.rate_percent,
        rate_source=row.rate_source,
        transaction_date=row.transaction.transaction_date,
        product_code=row.policy.product_code,
        state=row.policy.state,
        hierarchy_id=row.split.hierarchy_id,
        hierarchy_version_id=row.version.id,
        split_sequence=row.split.split_sequence,
        split_percent=row.split.split_percent,
        tier_level=row.participant.level,
    )
    values.update(overrides)
    return LedgerEntry(**values)


def assignment_applied(rows: list[PipelineRow], index: PipelineIndex) -> list[LedgerEntry]:
    ledger: list[LedgerEntry] = []
    seq: dict[str, int] = defaultdict(int)

    def next_id(txn_id: str) -> str:
        seq[txn_id] += 1
        return f"LE-{txn_id}-{seq[txn_id]}"

    for row in rows:
        when = row.transaction.transaction_date
        active = None
        if row.proposal_id is not None:
            for version, recipients in index.assignments.get((row.proposal_id, row.participant.broker_id), []):
                if version.status == "active" and version.covers(when) and recipients:
                    active = (version, recipients)
                    break
        if active is None:
            ledger.append(_entry(row, next_id(row.transaction_id)))
            continue

        version, recipients = active
        assigned_total = 0.0
        assigned: list[LedgerEntry] = []
        for r in recipients:
            amount = round(row.commission * r.percentage / 100, 2)
            assigned_total += amount
            assigned.append(
                _entry(
                    row,
                    "",
                    broker_id=r.recipient_broker_id,
                    broker_number=r.recipient_broker_number,
                    commission_amount=amount,
                    entry_type="Assigned",
                    source_broker_id=row.participant.broker_id,
                    assignment_version_id=version.id,
                )
            )
        retained = round(row.commission - assigned_total, 2)
        if retained > 0:
            ledger.append(
                _entry(
                    row,
                    next_id(row.transaction_id),
                    commission_amount=retained,
                    source_broker_id=row.participant.broker_id,
                    assignment_version_id=version.id,
                )
            )
        for entry in assigned:
            ledger.append(replace(entry, id=next_id(row.transaction_id)))
    return ledger


def build_traceability(
    premiums: Iterable[PremiumTransaction],
    policies: dict[str, PolicyRecord],
    ledger: list[LedgerEntry],
    failures: list[StageFailure],
    resolutions: dict[str, Resolution],
) -> tuple[list[Traceability], list[BrokerTraceability]]:
    entries: dict[str, list[LedgerEntry]] = defaultdict(list)
    for e in ledger:
        entries[e.transaction_id].append(e)
    failed: dict[str, list[StageFailure]] = defaultdict(list)
    for f in failures:
        failed[f.transaction_id].append(f)

    traces: list[Traceability] = []
    broker_traces: list[BrokerTraceability] = []
    for txn in premiums:
        own = entries.get(txn.transaction_id, [])
        errors = failed.get(txn.transaction_id, [])
        resolution = resolutions.get(txn.transaction_id)
        if own:
            status = "Partial" if errors else "Success"
            stage = 8
        elif errors and all(f.reason == SKIPPED_PREMIUM for f in errors):
            status = "Skipped"
            stage = errors[0].stage
        else:
            status = "Failed"
            stage = min((f.stage for f in errors), default=8)
        policy = policies.get(txn.certificate_id)
        trace_id = f"TR-{txn.transaction_id}"
        traces.append(
            Traceability(
                id=trace_id,
                transaction_id=txn.transaction_id,
                policy_id=policy.policy_id if policy else txn.certificate_id,
                transaction_date=txn.transaction_date,
                premium_amount=txn.premium_amount,
                total_commission=round(sum(e.commission_amount for e in own), 2),
                stage_reached=stage,
                status=status,
                resolution_kind=resolution.kind if resolution else None,
                proposal_id=resolution.proposal_id if isinstance(resolution, ProposalResolution) else None,
                hierarchy_count=len({e.hierarchy_id for e in own}),
                participant_count=len({(e.hierarchy_id, e.tier_level) for e in own}),
                has_assignments=any(e.assignment_version_id for e in own),
                error_messages="; ".join(f"stage {f.stage}: {f.reason}" for f in errors) or None,
            )
        )
        for e in own:
            broker_traces.append(
                BrokerTraceability(
                    id=f"BT-{e.id}",
                    traceability_id=trace_id,
                    ledger_entry_id=e.id,
                    broker_id=e.broker_id,
                    level=e.tier_level,
                    commission_amount=e.commission_amount,
                    rate_percent=e.rate_percent,
                    rate_source=e.rate_source,
                    is_assigned=e.entry_type == "Assigned",
                    original_broker_id=e.source_broker_id or e.broker_id,
                    assignment_version_id=e.assignment_version_id,
                )
            )
    return traces, broker_traces


def run_calculation(
    result: ConsolidationResult,
    premiums: Iterable[PremiumTransaction],
    policies: dict[str, PolicyRecord],
    groups: dict[str, GroupRecord],
    rates: RateTables | None = None,
    settings: EngineSettings | None = None,
) -> CalculationResult:
    settings = settings or EngineSettings()
    premiums = list(premiums)
    started = time.perf_counter()
    index = PipelineIndex(result, rates)
    calc = CalculationResult()

    def record(stage: int, rows: list[PipelineRow], failures: list[StageFailure]) -> None:
        calc.stage_counts[STAGES[stage]] = len(rows)
        calc.failures.extend(failures)
        logger.info("stage %d %s: %d rows, %d failures", stage, STAGES[stage], len(rows), len(failures))

    rows, failures = premium_context(premiums, policies, groups)
    record(1, rows, failures)
    rows, failures = proposal_resolution(rows, index)
    record(2, rows, failures)
    resolutions = {row.transaction_id: row.resolution for row in rows if row.resolution is not None}
    rows, failures, gaps = splits_applied(rows, settings.split_total_unit)
    calc.gaps.extend(gaps)
    record(3, rows, failures)
    rows, failures = hierarchy_resolution(rows, index)
    record(4, rows, failures)
    rows, failures = participant_expansion(rows, index)
    record(5, rows, failures)
    rows, failures = rate_application(rows, index)
    record(6, rows, failures)
    rows, failures = commission_calculated(rows, index, settings.apply_split_distribution)
    record(7, rows, failures)
    calc.ledger = assignment_applied(rows, index)
    calc.stage_counts[STAGES[8]] = len(calc.ledger)
    logger.info("stage 8 %s: %d ledger entries", STAGES[8], len(calc.ledger))

    calc.traceability, calc.broker_traceability = build_traceability(
        premiums, policies, calc.ledger, calc.failures, resolutions
    )
    if calc.gaps:
        logger.warning("%d transactions have split totals that do not stack to 100%%", len(calc.gaps))
    logger.info("calculation finished in %.2fs: %s", time.perf_counter() - started, calc.summary())
    return calc
