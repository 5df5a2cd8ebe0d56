from __future__ import annotations

import json
import sqlite3
from dataclasses import asdict, is_dataclass
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Any, Iterable

from commission_engine.consolidation import ConsolidationResult
from commission_engine.models import Proposal
from commission_engine.pipeline import CalculationResult

ENTITY_TABLES = (
    "proposals",
    "proposal_key_mappings",
    "premium_split_versions",
    "premium_split_participants",
    "hierarchies",
    "hierarchy_versions",
    "hierarchy_participants",
    "state_rules",
    "state_rule_states",
    "hierarchy_splits",
    "split_distributions",
    "policy_hierarchy_assignments",
    "policy_hierarchy_participants",
    "commission_assignment_versions",
    "commission_assignment_recipients",
)

CALCULATION_TABLES = ("ledger_entries", "traceability", "broker_traceability", "stage_failures")


def utc_now() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def get_conn(db_path: Path) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: Path) -> None:
    with get_conn(db_path) as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS consolidation_runs (
                run_id TEXT PRIMARY KEY,
                created_at TEXT NOT NULL,
                data_dir TEXT,
                stats_json TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS proposals (
                run_id TEXT NOT NULL,
                id TEXT NOT NULL,
                group_id TEXT NOT NULL,
                group_name TEXT,
                config_hash TEXT NOT NULL,
                first_effective_date TEXT NOT NULL,
                last_effective_date TEXT NOT NULL,
                effective_from TEXT NOT NULL,
                effective_to TEXT,
                product_codes TEXT NOT NULL,
                plan_codes TEXT NOT NULL,
                situs_states TEXT NOT NULL,
                certificate_count INTEGER NOT NULL,
                split_count INTEGER NOT NULL,
                continues_id TEXT,
                PRIMARY KEY (run_id, id),
                FOREIGN KEY (run_id) REFERENCES consolidation_runs(run_id)
            );

            CREATE TABLE IF NOT EXISTS proposal_key_mappings (
                run_id TEXT NOT NULL,
                group_id TEXT NOT NULL,
                effective_year INTEGER NOT NULL,
                product_code TEXT NOT NULL,
                plan_code TEXT NOT NULL,
                proposal_id TEXT NOT NULL,
                config_hash TEXT NOT NULL,
                PRIMARY KEY (run_id, group_id, effective_year, product_code, plan_code, proposal_id)
            );

            CREATE TABLE IF NOT EXISTS premium_split_versions (
                run_id TEXT NOT NULL,
                id TEXT NOT NULL,
                proposal_id TEXT NOT NULL,
                group_id TEXT NOT NULL,
                effective_from TEXT NOT NULL,
                effective_to TEXT,
                total_split_percent REAL NOT NULL,
                version_number TEXT NOT NULL,
                status TEXT NOT NULL,
                PRIMARY KEY (run_id, id)
            );

            CREATE TABLE IF NOT EXISTS premium_split_participants (
                run_id TEXT NOT NULL,
                id TEXT NOT NULL,
                version_id TEXT NOT NULL,
                sequence INTEGER NOT NULL,
                split_percent REAL NOT NULL,
                hierarchy_id TEXT NOT NULL,
                writing_broker_id TEXT NOT NULL,
                writing_broker_number INTEGER,
                writing_broker_name TEXT,
                PRIMARY KEY (run_id, id)
            );

            CREATE TABLE IF NOT EXISTS hierarchies (
                run_id TEXT NOT NULL,
                id TEXT NOT NULL,
                hierarchy_hash TEXT NOT NULL,
                name TEXT NOT NULL,
                writing_broker_id TEXT NOT NULL,
                current_version_id TEXT NOT NULL,
                effective_date TEXT NOT NULL,
                group_id TEXT,
                is_fallback INTEGER NOT NULL,
                status TEXT NOT NULL,
                PRIMARY KEY (run_id, id)
            );

            CREATE TABLE IF NOT EXISTS hierarchy_versions (
                run_id TEXT NOT NULL,
                id TEXT NOT NULL,
                hierarchy_id TEXT NOT NULL,
                effective_from TEXT NOT NULL,
                effective_to TEXT,
                version_number TEXT NOT NULL,
                status TEXT NOT NULL,
                PRIMARY KEY (run_id, id)
            );

            CREATE TABLE IF NOT EXISTS hierarchy_participants (
                run_id TEXT NOT NULL,
                id TEXT NOT NULL,
                hierarchy_version_id TEXT NOT NULL,
                level INTEGER NOT NULL,
                broker_id TEXT NOT NULL,
                broker_number INTEGER,
                schedule_code TEXT,
                schedule_id INTEGER,
                broker_name TEXT,
                paid_broker_id TEXT,
                split_percent REAL NOT NULL,
                is_active INTEGER NOT NULL,
                PRIMARY KEY (run_id, id)
            );

            CREATE TABLE IF NOT EXISTS state_rules (
                run_id TEXT NOT NULL,
                id TEXT NOT NULL,
                hierarchy_version_id TEXT NOT NULL,
                short_name TEXT NOT NULL,
                name TEXT NOT NULL,
                applies_to_all_states INTEGER NOT NULL,
                sort_order INTEGER NOT NULL,
                PRIMARY KEY (run_id, id)
            );

            CREATE TABLE IF NOT EXISTS state_rule_states (
                run_id TEXT NOT NULL,
                id TEXT NOT NULL,
                state_rule_id TEXT NOT NULL,
                state_code TEXT NOT NULL,
                state_name TEXT NOT NULL,
                PRIMARY KEY (run_id, id)
            );

            CREATE TABLE IF NOT EXISTS hierarchy_splits (
                run_id TEXT NOT NULL,
                id TEXT NOT NULL,
                state_rule_id TEXT NOT NULL,
                product_code TEXT NOT NULL,
                sort_order INTEGER NOT NULL,
                PRIMARY KEY (run_id, id)
            );

            CREATE TABLE IF NOT EXISTS split_distributions (
                run_id TEXT NOT NULL,
                id TEXT NOT NULL,
                hierarchy_split_id TEXT NOT NULL,
                hierarchy_participant_id TEXT NOT NULL,
                broker_number INTEGER,
                percentage REAL NOT NULL,
                schedule_code TEXT,
                schedule_id INTEGER,
                PRIMARY KEY (run_id, id)
            );

            CREATE TABLE IF NOT EXISTS policy_hierarchy_assignments (
                run_id TEXT NOT NULL,
                id TEXT NOT NULL,
                policy_id TEXT NOT NULL,
                hierarchy_id TEXT NOT NULL,
                split_sequence INTEGER NOT NULL,
                split_percent REAL NOT NULL,
                writing_broker_id TEXT NOT NULL,
                writing_broker_number INTEGER,
                reason TEXT NOT NULL,
                group_id TEXT,
                PRIMARY KEY (run_id, id)
            );

            CREATE TABLE IF NOT EXISTS policy_hierarchy_participants (
                run_id TEXT NOT NULL,
                id TEXT NOT NULL,
                assignment_id TEXT NOT NULL,
                level INTEGER NOT NULL,
                broker_id TEXT NOT NULL,
                schedule_code TEXT,
                broker_name TEXT,
                PRIMARY KEY (run_id, id)
            );

            CREATE TABLE IF NOT EXISTS commission_assignment_versions (
                run_id TEXT NOT NULL,
                id TEXT NOT NULL,
                proposal_id TEXT NOT NULL,
                source_broker_id TEXT NOT NULL,
                source_broker_number INTEGER,
                effective_from TEXT NOT NULL,
                effective_to TEXT,
                total_assigned_percent REAL NOT NULL,
                source_broker_name TEXT,
                status TEXT NOT NULL,
                PRIMARY KEY (run_id, id)
            );

            CREATE TABLE IF NOT EXISTS commission_assignment_recipients (
                run_id TEXT NOT NULL,
                id TEXT NOT NULL,
                version_id TEXT NOT NULL,
                recipient_broker_id TEXT NOT NULL,
                recipient_broker_number INTEGER,
                percentage REAL NOT NULL,
                recipient_name TEXT,
                PRIMARY KEY (run_id, id)
            );

            CREATE TABLE IF NOT EXISTS data_quality_gaps (
                run_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                detail TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS calculation_runs (
                calc_run_id TEXT PRIMARY KEY,
                run_id TEXT NOT NULL,
                created_at TEXT NOT NULL,
                summary_json TEXT NOT NULL,
                FOREIGN KEY (run_id) REFERENCES consolidation_runs(run_id)
            );

            CREATE TABLE IF NOT EXISTS ledger_entries (
                calc_run_id TEXT NOT NULL,
                id TEXT NOT NULL,
                transaction_id TEXT NOT NULL,
                policy_id TEXT NOT NULL,
                proposal_id TEXT,
                broker_id TEXT NOT NULL,
                broker_number INTEGER,
                commission_amount REAL NOT NULL,
                premium_amount REAL NOT NULL,
                split_premium_amount REAL NOT NULL,
                rate_percent REAL NOT NULL,
                rate_source TEXT NOT NULL,
                transaction_date TEXT NOT NULL,
                product_code TEXT NOT NULL,
                state TEXT,
                hierarchy_id TEXT NOT NULL,
                hierarchy_version_id TEXT NOT NULL,
                split_sequence INTEGER NOT NULL,
                split_percent REAL NOT NULL,
                tier_level INTEGER NOT NULL,
                entry_type TEXT NOT NULL,
                source_broker_id TEXT,
                assignment_version_id TEXT,
                PRIMARY KEY (calc_run_id, id)
            );

            CREATE TABLE IF NOT EXISTS traceability (
                calc_run_id TEXT NOT NULL,
                id TEXT NOT NULL,
                transaction_id TEXT NOT NULL,
                policy_id TEXT NOT NULL,
                transaction_date TEXT NOT NULL,
                premium_amount REAL NOT NULL,
                total_commission REAL NOT NULL,
                stage_reached INTEGER NOT NULL,
                status TEXT NOT NULL,
                resolution_kind TEXT,
                proposal_id TEXT,
                hierarchy_count INTEGER NOT NULL,
                participant_count INTEGER NOT NULL,
                has_assignments INTEGER NOT NULL,
                error_messages TEXT,
                PRIMARY KEY (calc_run_id, id)
            );

            CREATE TABLE IF NOT EXISTS broker_traceability (
                calc_run_id TEXT NOT NULL,
                id TEXT NOT NULL,
                traceability_id TEXT NOT NULL,
                ledger_entry_id TEXT NOT NULL,
                broker_id TEXT NOT NULL,
                level INTEGER NOT NULL,
                commission_amount REAL NOT NULL,
                rate_percent REAL NOT NULL,
                rate_source TEXT NOT NULL,
                is_assigned INTEGER NOT NULL,
                original_broker_id TEXT NOT NULL,
                assignment_version_id TEXT,
                PRIMARY KEY (calc_run_id, id)
            );

            CREATE TABLE IF NOT EXISTS stage_failures (
                calc_run_id TEXT NOT NULL,
                transaction_id TEXT NOT NULL,
                stage INTEGER NOT NULL,
                reason TEXT NOT NULL
            );
            """
        )


def _value(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return json.dumps(sorted(value))
    if isinstance(value, (list, tuple)):
        return json.dumps(list(value))
    return value


def _proposal_row(p: Proposal) -> dict[str, Any]:
    return {
        "id": p.id,
        "group_id": p.group_id,
        "group_name": p.group_name,
        "config_hash": p.config_hash,
        "first_effective_date": p.first_effective_date,
        "last_effective_date": p.last_effective_date,
        "effective_from": p.effective_from,
        "effective_to": p.effective_to,
        "product_codes": p.product_codes,
        "plan_codes": p.plan_codes,
        "situs_states": p.situs_states,
        "certificate_count": len(p.certificate_ids),
        "split_count": len(p.splits),
        "continues_id": p.continues_id,
    }


def _insert(conn: sqlite3.Connection, table: str, key: tuple[str, str], items: Iterable[Any]) -> int:
    count = 0
    sql = None
    for item in items:
        row = _proposal_row(item) if isinstance(item, Proposal) else asdict(item) if is_dataclass(item) else dict(item)
        columns = [key[0], *row.keys()]
        if sql is None:
            placeholders = ", ".join("?" for _ in columns)
            sql = f"INSERT INTO {table}({', '.join(columns)}) VALUES ({placeholders})"
        conn.execute(sql, (key[1], *(_value(v) for v in row.values())))
        count += 1
    return count


def save_consolidation_run(
    db_path: Path, run_id: str, result: ConsolidationResult, data_dir: Path | None = None
) -> dict[str, int]:
    with get_conn(db_path) as conn:
        conn.execute(
            "INSERT INTO consolidation_runs(run_id, created_at, data_dir, stats_json) VALUES (?, ?, ?, ?)",
            (run_id, utc_now(), None if data_dir is None else str(data_dir), json.dumps(result.stats)),
        )
        counts = {
            table: _insert(conn, table, ("run_id", run_id), rows) for table, rows in result.tables().items()
        }
        counts["data_quality_gaps"] = _insert(conn, "data_quality_gaps", ("run_id", run_id), result.gaps)
        return counts


def save_calculation_run(db_path: Path, calc_run_id: str, run_id: str, result: CalculationResult) -> dict[str, int]:
    with get_conn(db_path) as conn:
        conn.execute(
            "INSERT INTO calculation_runs(calc_run_id, run_id, created_at, summary_json) VALUES (?, ?, ?, ?)",
            (calc_run_id, run_id, utc_now(), json.dumps(result.summary())),
        )
        key = ("calc_run_id", calc_run_id)
        return {
            "ledger_entries": _insert(conn, "ledger_entries", key, result.ledger),
            "traceability": _insert(conn, "traceability", key, result.traceability),
            "broker_traceability": _insert(conn, "broker_traceability", key, result.broker_traceability),
            "stage_failures": _insert(conn, "stage_failures", key, result.failures),
        }


def run_exists(db_path: Path, run_id: str) -> bool:
    with get_conn(db_path) as conn:
        row = conn.execute("SELECT 1 FROM consolidation_runs WHERE run_id = ?", (run_id,)).fetchone()
        return row is not None


def latest_run_id(db_path: Path) -> str | None:
    with get_conn(db_path) as conn:
        row = conn.execute(
            "SELECT run_id FROM consolidation_runs ORDER BY created_at DESC, rowid DESC LIMIT 1"
        ).fetchone()
        return None if row is None else str(row["run_id"])


def latest_calc_run_id(db_path: Path, run_id: str | None = None) -> str | None:
    with get_conn(db_path) as conn:
        if run_id:
            row = conn.execute(
                """
                SELECT calc_run_id FROM calculation_runs
                WHERE run_id = ?
                ORDER BY created_at DESC, rowid DESC LIMIT 1
                """,
                (run_id,),
            ).fetchone()
        else:
            row = conn.execute(
                "SELECT calc_run_id FROM calculation_runs ORDER BY created_at DESC, rowid DESC LIMIT 1"
            ).fetchone()
        return None if row is None else str(row["calc_run_id"])


def list_runs(db_path: Path, limit: int = 50) -> list[dict[str, Any]]:
    with get_conn(db_path) as conn:
        rows = conn.execute(
            """
            SELECT run_id, created_at, data_dir, stats_json
            FROM consolidation_runs
            ORDER BY created_at DESC, rowid DESC
            LIMIT ?
            """,
            (limit,),
        ).fetchall()
    out = []
    for row in rows:
        item = dict(row)
        item["stats"] = json.loads(item.pop("stats_json"))
        out.append(item)
    return out


def get_run_stats(db_path: Path, run_id: str) -> dict[str, Any] | None:
    with get_conn(db_path) as conn:
        row = conn.execute("SELECT stats_json FROM consolidation_runs WHERE run_id = ?", (run_id,)).fetchone()
        return None if row is None else json.loads(row["stats_json"])


def list_entities(
    db_path: Path, table: str, run_id: str | None = None, limit: int = 500
) -> tuple[list[dict[str, Any]], str | None]:
    if table not in ENTITY_TABLES:
        raise ValueError(f"unknown entity table: {table}")
    run_id = run_id or latest_run_id(db_path)
    if run_id is None:
        return [], None
    with get_conn(db_path) as conn:
        # table is checked against ENTITY_TABLES above.
        rows = conn.execute(
            f"SELECT * FROM {table} WHERE run_id = ? ORDER BY rowid LIMIT ?",
            (run_id, limit),
        ).fetchall()
        return [dict(row) for row in rows], run_id


def list_gaps(
    db_path: Path, run_id: str | None = None, kind: str | None = None, limit: int = 500
) -> tuple[list[dict[str, Any]], str | None]:
    run_id = run_id or latest_run_id(db_path)
    if run_id is None:
        return [], None
    with get_conn(db_path) as conn:
        if kind:
            rows = conn.execute(
                """
                SELECT kind, entity_type, entity_id, detail
                FROM data_quality_gaps
                WHERE run_id = ? AND kind = ?
                ORDER BY rowid
                LIMIT ?
                """,
                (run_id, kind, limit),
            ).fetchall()
        else:
            rows = conn.execute(
                """
                SELECT kind, entity_type, entity_id, detail
                FROM data_quality_gaps
                WHERE run_id = ?
                ORDER BY rowid
                LIMIT ?
                """,
                (run_id, limit),
            ).fetchall()
        return [dict(row) for row in rows], run_id


def list_traceability(
    db_path: Path, calc_run_id: str | None = None, status: str | None = None, limit: int = 500
) -> tuple[list[dict[str, Any]], str | None]:
    calc_run_id = calc_run_id or latest_calc_run_id(db_path)
    if calc_run_id is None:
        return [], None
    with get_conn(db_path) as conn:
        if status:
            rows = conn.execute(
                """
                SELECT * FROM traceability
                WHERE calc_run_id = ? AND status = ?
                ORDER BY transaction_id
                LIMIT ?
                """,
                (calc_run_id, status, limit),
            ).fetchall()
        else:
            rows = conn.execute(
                """
                SELECT * FROM traceability
                WHERE calc_run_id = ?
                ORDER BY transaction_id
                LIMIT ?
                """,
                (calc_run_id, limit),
            ).fetchall()
        return [dict(row) for row in rows], calc_run_id
