from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date

# ---------------------------------------------------------------------------
# Snapshot inputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CertificateSplitRow:
    group_id: str | None
    certificate_id: str
    effective_date: date
    product_code: str
    plan_code: str
    split_sequence: int
    split_percent: float
    tier_level: int
    broker_id: str
    schedule_code: str | None
    situs_state: str | None
    group_name: str | None = None
    status: str = "A"
    premium: float = 0.0
    broker_name: str | None = None
    paid_broker_id: str | None = None
    paid_broker_name: str | None = None
    assigned_percent: float | None = None


@dataclass(frozen=True)
class PremiumTransaction:
    transaction_id: str
    certificate_id: str
    transaction_date: date
    premium_amount: float


@dataclass(frozen=True)
class PolicyRecord:
    policy_id: str
    group_id: str | None
    product_code: str
    plan_code: str
    state: str | None
    effective_date: date


@dataclass(frozen=True)
class GroupRecord:
    group_id: str
    group_name: str | None = None
    group_size: int | None = None


@dataclass(frozen=True)
class ScheduleRate:
    schedule_code: str
    product_code: str
    state: str | None
    group_size_from: int | None
    group_size_to: int | None
    first_year_rate: float | None
    renewal_rate: float | None


@dataclass(frozen=True)
class CertificateRate:
    certificate_id: str
    broker_id: str
    rate: float


@dataclass(frozen=True)
class MigratedRate:
    broker_id: str
    product_code: str
    rate: float


@dataclass
class RateTables:
    schedule_rates: list[ScheduleRate] = field(default_factory=list)
    certificate_rates: list[CertificateRate] = field(default_factory=list)
    migrated_rates: list[MigratedRate] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class HierarchyTier:
    level: int
    broker_id: str
    schedule_code: str | None
    broker_name: str | None = None
    paid_broker_id: str | None = None
    paid_broker_name: str | None = None
    assigned_percent: float | None = None

    @property
    def is_redirected(self) -> bool:
        paid = (self.paid_broker_id or "").strip()
        return bool(paid) and bool(self.broker_id.strip()) and paid != self.broker_id.strip()


@dataclass(frozen=True)
class SplitParticipant:
    split_sequence: int
    split_percent: float
    tiers: tuple[HierarchyTier, ...]
    hierarchy_hash: str

    @property
    def writing_broker_id(self) -> str:
        return self.tiers[0].broker_id if self.tiers else ""

    @property
    def writing_broker_name(self) -> str | None:
        return self.tiers[0].broker_name if self.tiers else None


@dataclass
class SelectionCriteria:
    certificate_id: str
    group_id: str | None
    group_name: str | None
    effective_date: date
    product_code: str
    plan_code: str
    situs_state: str | None
    splits: list[SplitParticipant]
    config_hash: str

    @property
    def total_split_percent(self) -> float:
        return round(sum(s.split_percent for s in self.splits), 4)


# ---------------------------------------------------------------------------
# Consolidated entities
# ---------------------------------------------------------------------------


@dataclass
class Proposal:
    id: str
    group_id: str
    group_name: str | None
    config_hash: str
    splits: list[SplitParticipant]
    first_effective_date: date
    last_effective_date: date
    effective_from: date
    effective_to: date | None = None
    product_codes: list[str] = field(default_factory=list)
    plan_codes: list[str] = field(default_factory=list)
    product_plan_pairs: set[tuple[str, str]] = field(default_factory=set)
    situs_states: set[str] = field(default_factory=set)
    certificate_ids: list[str] = field(default_factory=list)
    continues_id: str | None = None

    @property
    def writing_broker_id(self) -> str:
        return self.splits[0].writing_broker_id if self.splits else ""

    @property
    def has_window(self) -> bool:
        return self.effective_to is None or self.effective_to >= self.effective_from

    def covers(self, when: date) -> bool:
        if when < self.effective_from:
            return False
        return self.effective_to is None or when <= self.effective_to


@dataclass(frozen=True)
class ProposalKeyMapping:
    group_id: str
    effective_year: int
    product_code: str
    plan_code: str
    proposal_id: str
    config_hash: str


@dataclass(frozen=True)
class PremiumSplitVersion:
    id: str
    proposal_id: str
    group_id: str
    effective_from: date
    effective_to: date | None
    total_split_percent: float
    version_number: str = "V1"
    status: str = "active"


@dataclass(frozen=True)
class PremiumSplitParticipant:
    id: str
    version_id: str
    sequence: int
    split_percent: float
    hierarchy_id: str
    writing_broker_id: str
    writing_broker_number: int | None
    writing_broker_name: str | None = None


@dataclass(frozen=True)
class Hierarchy:
    id: str
    hierarchy_hash: str
    name: str
    writing_broker_id: str
    current_version_id: str
    effective_date: date
    group_id: str | None = None
    is_fallback: bool = False
    status: str = "active"


@dataclass(frozen=True)
class HierarchyVersion:
    id: str
    hierarchy_id: str
    effective_from: date
    effective_to: date | None = None
    version_number: str = "V1"
    status: str = "active"

    def covers(self, when: date) -> bool:
        if when < self.effective_from:
            return False
        return self.effective_to is None or when <= self.effective_to


@dataclass(frozen=True)
class HierarchyParticipant:
    id: str
    hierarchy_version_id: str
    level: int
    broker_id: str
    broker_number: int | None
    schedule_code: str | None
    schedule_id: int | None
    broker_name: str | None = None
    paid_broker_id: str | None = None
    split_percent: float = 100.0
    is_active: bool = True


@dataclass(frozen=True)
class StateRule:
    id: str
    hierarchy_version_id: str
    short_name: str
    name: str
    applies_to_all_states: bool
    sort_order: int


@dataclass(frozen=True)
class StateRuleState:
    id: str
    state_rule_id: str
    state_code: str
    state_name: str


@dataclass(frozen=True)
class HierarchySplit:
    id: str
    state_rule_id: str
    product_code: str
    sort_order: int


@dataclass(frozen=True)
class SplitDistribution:
    id: str
    hierarchy_split_id: str
    hierarchy_participant_id: str
    broker_number: int | None
    percentage: float
    schedule_code: str | None
    schedule_id: int | None


@dataclass(frozen=True)
class PolicyHierarchyAssignment:
    id: str
    policy_id: str
    hierarchy_id: str
    split_sequence: int
    split_percent: float
    writing_broker_id: str
    writing_broker_number: int | None
    reason: str
    group_id: str | None = None


@dataclass(frozen=True)
class PolicyHierarchyParticipant:
    id: str
    assignment_id: str
    level: int
    broker_id: str
    schedule_code: str | None
    broker_name: str | None = None


@dataclass(frozen=True)
class CommissionAssignmentVersion:
    id: str
    proposal_id: str
    source_broker_id: str
    source_broker_number: int | None
    effective_from: date
    effective_to: date | None
    total_assigned_percent: float = 100.0
    source_broker_name: str | None = None
    status: str = "active"

    def covers(self, when: date) -> bool:
        if when < self.effective_from:
            return False
        return self.effective_to is None or when <= self.effective_to


@dataclass(frozen=True)
class CommissionAssignmentRecipient:
    id: str
    version_id: str
    recipient_broker_id: str
    recipient_broker_number: int | None
    percentage: float = 100.0
    recipient_name: str | None = None


# ---------------------------------------------------------------------------
# Calculation outputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LedgerEntry:
    id: str
    transaction_id: str
    policy_id: str
    proposal_id: str | None
    broker_id: str
    broker_number: int | None
    commission_amount: float
    premium_amount: float
    split_premium_amount: float
    rate_percent: float
    rate_source: str
    transaction_date: date
    product_code: str
    state: str | None
    hierarchy_id: str
    hierarchy_version_id: str
    split_sequence: int
    split_percent: float
    tier_level: int
    entry_type: str = "Original"
    source_broker_id: str | None = None
    assignment_version_id: str | None = None


@dataclass(frozen=True)
class StageFailure:
    transaction_id: str
    stage: int
    reason: str


@dataclass(frozen=True)
class Traceability:
    id: str
    transaction_id: str
    policy_id: str
    transaction_date: date
    premium_amount: float
    total_commission: float
    stage_reached: int
    status: str
    resolution_kind: str | None
    proposal_id: str | None
    hierarchy_count: int
    participant_count: int
    has_assignments: bool
    error_messages: str | None = None


@dataclass(frozen=True)
class BrokerTraceability:
    id: str
    traceability_id: str
    ledger_entry_id: str
    broker_id: str
    level: int
    commission_amount: float
    rate_percent: float
    rate_source: str
    is_assigned: bool
    original_broker_id: str
    assignment_version_id: str | None = None
