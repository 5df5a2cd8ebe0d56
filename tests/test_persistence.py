from __future__ import annotations

import tempfile
import unittest
from datetime import date
from pathlib import Path

from commission_engine.consolidation import consolidate
from commission_engine.loader import policies_from_rows
from commission_engine.models import (
    CertificateSplitRow,
    GroupRecord,
    PremiumTransaction,
    RateTables,
    ScheduleRate,
)
from commission_engine.persistence import (
    init_db,
    latest_calc_run_id,
    latest_run_id,
    list_entities,
    list_gaps,
    list_runs,
    list_traceability,
    save_calculation_run,
    save_consolidation_run,
)
from commission_engine.pipeline import run_calculation


def rows() -> list[CertificateSplitRow]:
    out = []
    for cert, state in (("C1", "OK"), ("C2", "TX")):
        for level, (broker, schedule) in enumerate((("P1", "5512A"), ("P2", "6013"), ("P3", "70175")), start=1):
            out.append(
                CertificateSplitRow(
                    group_id="0006",
                    certificate_id=cert,
                    effective_date=date(2021, 1, 1),
                    product_code="DEN",
                    plan_code="D1",
                    split_sequence=1,
                    split_percent=100.0,
                    tier_level=level,
                    broker_id=broker,
                    schedule_code=schedule,
                    situs_state=state,
                )
            )
    return out


class PersistenceTests(unittest.TestCase):
    def test_save_and_list_consolidation_run(self) -> None:
        result = consolidate(rows(), {"5512A": 1, "6013": 2})
        with tempfile.TemporaryDirectory() as tmp:
            db = Path(tmp) / "engine.db"
            init_db(db)
            counts = save_consolidation_run(db, "run-1", result)
            self.assertEqual(counts["hierarchies"], 1)
            self.assertEqual(counts["state_rules"], 2)
            self.assertEqual(counts["split_distributions"], 6)
            self.assertEqual(counts["data_quality_gaps"], 2)
            self.assertEqual(latest_run_id(db), "run-1")

            runs = list_runs(db)
            self.assertEqual(runs[0]["stats"]["proposals"], 1)

            hierarchies, run_id = list_entities(db, "hierarchies")
            self.assertEqual(run_id, "run-1")
            self.assertEqual(hierarchies[0]["is_fallback"], 0)
            proposals, _ = list_entities(db, "proposals", run_id="run-1")
            self.assertEqual(proposals[0]["situs_states"], '["OK", "TX"]')
            self.assertEqual(proposals[0]["effective_to"], None)
            self.assertEqual(proposals[0]["certificate_count"], 2)

            gaps, _ = list_gaps(db, kind="unresolved_schedule")
            self.assertEqual(len(gaps), 2)
            none, _ = list_entities(db, "hierarchies", run_id="run-missing")
            self.assertEqual(none, [])
            with self.assertRaises(ValueError):
                list_entities(db, "sqlite_master")

    def test_save_calculation_run(self) -> None:
        snapshot_rows = rows()
        result = consolidate(snapshot_rows, {"5512A": 1, "6013": 2, "70175": 3})
        rates = RateTables(
            schedule_rates=[ScheduleRate(code, "DEN", None, None, None, 9.0, 3.0) for code in ("5512A", "6013", "70175")]
        )
        calc = run_calculation(
            result,
            [
                PremiumTransaction("T1", "C1", date(2021, 2, 1), 300.0),
                PremiumTransaction("T2", "C9", date(2021, 2, 1), 300.0),
            ],
            policies_from_rows(snapshot_rows),
            {"0006": GroupRecord("0006")},
            rates,
        )
        with tempfile.TemporaryDirectory() as tmp:
            db = Path(tmp) / "engine.db"
            init_db(db)
            save_consolidation_run(db, "run-1", result)
            counts = save_calculation_run(db, "calc-1", "run-1", calc)
            self.assertEqual(counts["ledger_entries"], 3)
            self.assertEqual(counts["stage_failures"], 1)
            self.assertEqual(latest_calc_run_id(db, "run-1"), "calc-1")

            failed, calc_run_id = list_traceability(db, status="Failed")
            self.assertEqual(calc_run_id, "calc-1")
            self.assertEqual([r["transaction_id"] for r in failed], ["T2"])
            ok, _ = list_traceability(db, status="Success")
            self.assertEqual(ok[0]["stage_reached"], 8)
            self.assertEqual(ok[0]["total_commission"], 27.0)


if __name__ == "__main__":
    unittest.main()
