from __future__ import annotations

import csv
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any, Iterable

from commission_engine.errors import SnapshotError
from commission_engine.models import (
    CertificateRate,
    CertificateSplitRow,
    GroupRecord,
    MigratedRate,
    PolicyRecord,
    PremiumTransaction,
    RateTables,
    ScheduleRate,
)

logger = logging.getLogger(__name__)

CERTIFICATES_CSV = "raw/certificates/certificate_splits.csv"
PREMIUMS_CSV = "raw/premiums/premium_transactions.csv"
SCHEDULES_CSV = "reference/schedules.csv"
BROKERS_CSV = "reference/brokers.csv"
GROUPS_CSV = "reference/groups.csv"
SCHEDULE_RATES_CSV = "reference/schedule_rates.csv"
CERTIFICATE_RATES_CSV = "reference/certificate_rates.csv"
MIGRATED_RATES_CSV = "reference/migrated_rates.csv"

CERTIFICATE_FIELDS = [
    "group_id",
    "group_name",
    "certificate_id",
    "effective_date",
    "product_code",
    "plan_code",
    "status",
    "situs_state",
    "premium",
    "split_sequence",
    "split_percent",
    "tier_level",
    "broker_id",
    "broker_name",
    "schedule_code",
    "paid_broker_id",
    "paid_broker_name",
    "assigned_percent",
]

_BROKER_DIGITS = re.compile(r"^[A-Za-z]*(\d+)$")


def read_csv(path: Path) -> list[dict[str, str]]:
    if not path.exists():
        return []
    with path.open(newline="", encoding="utf-8") as f:
        return list(csv.DictReader(f))


def _blank(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def parse_date(value: str) -> date:
    value = value.strip()
    if "/" in value:
        return datetime.strptime(value, "%m/%d/%Y").date()
    return date.fromisoformat(value[:10])


def _required(row: dict[str, str], key: str, path: Path, line: int) -> str:
    value = _blank(row.get(key))
    if value is None:
        raise SnapshotError(str(path), line, f"missing required column {key!r}")
    return value


def _number(value: str | None, cast: Any, path: Path, line: int, key: str) -> Any:
    value = _blank(value)
    if value is None:
        return None
    try:
        return cast(value)
    except ValueError as exc:
        raise SnapshotError(str(path), line, f"invalid {key}: {value!r}") from exc


def _date(value: str, path: Path, line: int, key: str) -> date:
    try:
        return parse_date(value)
    except ValueError as exc:
        raise SnapshotError(str(path), line, f"invalid {key}: {value!r}") from exc


def load_certificate_rows(
    path: Path, active_statuses: Iterable[str] = ("A", "ACTIVE")
) -> list[CertificateSplitRow]:
    active = {s.strip().upper() for s in active_statuses}
    rows: list[CertificateSplitRow] = []
    skipped = 0
    # Line 1 is the header.
    for line, raw in enumerate(read_csv(path), start=2):
        status = (_blank(raw.get("status")) or "A").upper()
        if active and status not in active:
            skipped += 1
            continue
        rows.append(
            CertificateSplitRow(
                group_id=_blank(raw.get("group_id")),
                group_name=_blank(raw.get("group_name")),
                certificate_id=_required(raw, "certificate_id", path, line),
                effective_date=_date(_required(raw, "effective_date", path, line), path, line, "effective_date"),
                product_code=_required(raw, "product_code", path, line),
                plan_code=_blank(raw.get("plan_code")) or "",
                status=status,
                situs_state=(_blank(raw.get("situs_state")) or "").upper() or None,
                premium=_number(raw.get("premium"), float, path, line, "premium") or 0.0,
                split_sequence=_number(_required(raw, "split_sequence", path, line), int, path, line, "split_sequence"),
                split_percent=_number(_required(raw, "split_percent", path, line), float, path, line, "split_percent"),
                tier_level=_number(_required(raw, "tier_level", path, line), int, path, line, "tier_level"),
                broker_id=_required(raw, "broker_id", path, line),
                broker_name=_blank(raw.get("broker_name")),
                schedule_code=_blank(raw.get("schedule_code")),
                paid_broker_id=_blank(raw.get("paid_broker_id")),
                paid_broker_name=_blank(raw.get("paid_broker_name")),
                assigned_percent=_number(raw.get("assigned_percent"), float, path, line, "assigned_percent"),
            )
        )
    if skipped:
        logger.info("skipped %d inactive certificate rows in %s", skipped, path)
    return rows


def load_code_lookup(path: Path, code_key: str = "external_id", id_key: str = "id") -> dict[str, int]:
    lookup: dict[str, int] = {}
    for line, raw in enumerate(read_csv(path), start=2):
        code = _blank(raw.get(code_key))
        if code is None:
            continue
        lookup[code] = _number(_required(raw, id_key, path, line), int, path, line, id_key)
    return lookup


def load_schedule_lookup(path: Path) -> dict[str, int]:
    return load_code_lookup(path)


def load_broker_lookup(path: Path) -> dict[str, int]:
    return load_code_lookup(path)


def broker_number(external_id: str | None, lookup: dict[str, int] | None = None) -> int | None:
    """Internal numeric id for an external broker code such as ``P13178``."""
    code = _blank(external_id)
    if code is None:
        return None
    if lookup and code in lookup:
        return lookup[code]
    match = _BROKER_DIGITS.match(code)
    return int(match.group(1)) if match else None


def load_groups(path: Path) -> dict[str, GroupRecord]:
    groups: dict[str, GroupRecord] = {}
    for line, raw in enumerate(read_csv(path), start=2):
        group_id = _required(raw, "group_id", path, line)
        groups[group_id] = GroupRecord(
            group_id=group_id,
            group_name=_blank(raw.get("group_name")),
            group_size=_number(raw.get("group_size"), int, path, line, "group_size"),
        )
    return groups


def load_premium_transactions(path: Path) -> list[PremiumTransaction]:
    out: list[PremiumTransaction] = []
    for line, raw in enumerate(read_csv(path), start=2):
        out.append(
            PremiumTransaction(
                transaction_id=_required(raw, "transaction_id", path, line),
                certificate_id=_required(raw, "certificate_id", path, line),
                transaction_date=_date(_required(raw, "transaction_date", path, line), path, line, "transaction_date"),
                premium_amount=_number(_required(raw, "premium_amount", path, line), float, path, line, "premium_amount"),
            )
        )
    return out


def load_rate_tables(data_dir: Path) -> RateTables:
    tables = RateTables()
    path = data_dir / SCHEDULE_RATES_CSV
    for line, raw in enumerate(read_csv(path), start=2):
        tables.schedule_rates.append(
            ScheduleRate(
                schedule_code=_required(raw, "schedule_code", path, line),
                product_code=_required(raw, "product_code", path, line),
                state=(_blank(raw.get("state")) or "").upper() or None,
                group_size_from=_number(raw.get("group_size_from"), int, path, line, "group_size_from"),
                group_size_to=_number(raw.get("group_size_to"), int, path, line, "group_size_to"),
                first_year_rate=_number(raw.get("first_year_rate"), float, path, line, "first_year_rate"),
                renewal_rate=_number(raw.get("renewal_rate"), float, path, line, "renewal_rate"),
            )
        )
    path = data_dir / CERTIFICATE_RATES_CSV
    for line, raw in enumerate(read_csv(path), start=2):
        tables.certificate_rates.append(
            CertificateRate(
                certificate_id=_required(raw, "certificate_id", path, line),
                broker_id=_required(raw, "broker_id", path, line),
                rate=_number(_required(raw, "rate", path, line), float, path, line, "rate"),
            )
        )
    path = data_dir / MIGRATED_RATES_CSV
    for line, raw in enumerate(read_csv(path), start=2):
        tables.migrated_rates.append(
            MigratedRate(
                broker_id=_required(raw, "broker_id", path, line),
                product_code=_required(raw, "product_code", path, line),
                rate=_number(_required(raw, "rate", path, line), float, path, line, "rate"),
            )
        )
    return tables


def policies_from_rows(rows: Iterable[CertificateSplitRow]) -> dict[str, PolicyRecord]:
    """One policy per certificate, taken from its first row."""
    policies: dict[str, PolicyRecord] = {}
    for row in rows:
        if row.certificate_id in policies:
            continue
        policies[row.certificate_id] = PolicyRecord(
            policy_id=row.certificate_id,
            group_id=row.group_id,
            product_code=row.product_code,
            plan_code=row.plan_code,
            state=row.situs_state,
            effective_date=row.effective_date,
        )
    return policies


@dataclass
class Snapshot:
    rows: list[CertificateSplitRow] = field(default_factory=list)
    schedules: dict[str, int] = field(default_factory=dict)
    brokers: dict[str, int] = field(default_factory=dict)
    groups: dict[str, GroupRecord] = field(default_factory=dict)
    premiums: list[PremiumTransaction] = field(default_factory=list)
    rates: RateTables = field(default_factory=RateTables)

    @property
    def policies(self) -> dict[str, PolicyRecord]:
        return policies_from_rows(self.rows)


def load_snapshot(data_dir: Path, active_statuses: Iterable[str] = ("A", "ACTIVE")) -> Snapshot:
    snapshot = Snapshot(
        rows=load_certificate_rows(data_dir / CERTIFICATES_CSV, active_statuses),
        schedules=load_schedule_lookup(data_dir / SCHEDULES_CSV),
        brokers=load_broker_lookup(data_dir / BROKERS_CSV),
        groups=load_groups(data_dir / GROUPS_CSV),
        premiums=load_premium_transactions(data_dir / PREMIUMS_CSV),
        rates=load_rate_tables(data_dir),
    )
    logger.info(
        "loaded snapshot from %s: %d certificate rows, %d premiums, %d schedules, %d brokers",
        data_dir,
        len(snapshot.rows),
        len(snapshot.premiums),
        len(snapshot.schedules),
        len(snapshot.brokers),
    )
    return snapshot
