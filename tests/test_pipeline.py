from __future__ import annotations

import unittest
from dataclasses import replace
from datetime import date

from commission_engine.config import EngineSettings
from commission_engine.consolidation import consolidate
from commission_engine.loader import policies_from_rows
from commission_engine.models import (
    CertificateRate,
    CertificateSplitRow,
    GroupRecord,
    MigratedRate,
    PremiumTransaction,
    RateTables,
    ScheduleRate,
)
from commission_engine.pipeline import (
    STAGES,
    FallbackResolution,
    PipelineIndex,
    ProposalResolution,
    premium_context,
    proposal_resolution,
    run_calculation,
)

SCHEDULES = {"S1": 1, "S2": 2}
GROUPS = {"0100": GroupRecord("0100", "Acme", 50)}


def certificate(cert: str = "C1", group: str | None = "0100", paid: str | None = None, **kw) -> list[CertificateSplitRow]:
    values = dict(
        group_id=group,
        certificate_id=cert,
        effective_date=date(2021, 1, 1),
        product_code="DEN",
        plan_code="D1",
        split_sequence=1,
        split_percent=100.0,
        situs_state="OK",
    )
    values.update(kw)
    return [
        CertificateSplitRow(tier_level=1, broker_id="A", schedule_code="S1", paid_broker_id=paid, **values),
        CertificateSplitRow(tier_level=2, broker_id="B", schedule_code="S2", **values),
    ]


def schedule_rates() -> RateTables:
    return RateTables(
        schedule_rates=[
            ScheduleRate("S1", "DEN", None, None, None, 10.0, 5.0),
            ScheduleRate("S2", "DEN", None, None, None, 4.0, 2.0),
        ]
    )


def txn(txn_id: str = "T1", cert: str = "C1", when: date = date(2021, 6, 1), amount: float = 1000.0) -> PremiumTransaction:
    return PremiumTransaction(txn_id, cert, when, amount)


class PipelineTests(unittest.TestCase):
    def calculate(self, rows, premiums, rates=None, groups=GROUPS, settings=None, result=None):
        result = result or consolidate(rows, SCHEDULES)
        return run_calculation(
            result, premiums, policies_from_rows(rows), groups, rates or schedule_rates(), settings
        )

    def test_proposal_path_end_to_end(self) -> None:
        rows = certificate()
        calc = self.calculate(rows, [txn()])
        self.assertEqual([(e.broker_id, e.commission_amount) for e in calc.ledger], [("A", 50.0), ("B", 20.0)])
        entry = calc.ledger[0]
        self.assertEqual(entry.proposal_id, "PROP-0100-1")
        self.assertEqual(entry.rate_source, "schedule")
        self.assertEqual(entry.split_premium_amount, 1000.0)
        self.assertEqual(entry.entry_type, "Original")
        [trace] = calc.traceability
        self.assertEqual((trace.status, trace.stage_reached), ("Success", 8))
        self.assertEqual(trace.resolution_kind, "proposal")
        self.assertEqual(trace.total_commission, 70.0)
        self.assertEqual(trace.participant_count, 2)
        self.assertEqual(len(calc.broker_traceability), 2)
        self.assertEqual(set(calc.stage_counts), set(STAGES.values()))

    def test_distribution_factor_can_be_disabled(self) -> None:
        calc = self.calculate(certificate(), [txn()], settings=EngineSettings(apply_split_distribution=False))
        self.assertEqual([e.commission_amount for e in calc.ledger], [100.0, 40.0])

    def test_renewal_rate_after_anniversary(self) -> None:
        calc = self.calculate(certificate(), [txn(when=date(2022, 1, 1))])
        self.assertEqual([e.commission_amount for e in calc.ledger], [25.0, 10.0])

    def test_rate_priority(self) -> None:
        rates = schedule_rates()
        rates.certificate_rates.append(CertificateRate("C1", "A", 15.0))
        rates.migrated_rates.append(MigratedRate("B", "DEN", 6.0))
        calc = self.calculate(certificate(), [txn()], rates=rates)
        self.assertEqual(
            [(e.rate_source, e.commission_amount) for e in calc.ledger],
            [("certificate", 75.0), ("migrated", 30.0)],
        )

    def test_state_specific_schedule_rate_wins(self) -> None:
        rates = schedule_rates()
        rates.schedule_rates.append(ScheduleRate("S1", "DEN", "OK", None, None, 20.0, 10.0))
        rates.schedule_rates.append(ScheduleRate("S2", "DEN", "TX", None, None, 99.0, 99.0))
        calc = self.calculate(certificate(), [txn()], rates=rates)
        self.assertEqual([e.rate_percent for e in calc.ledger], [20.0, 4.0])

    def test_group_size_tier(self) -> None:
        rates = RateTables(
            schedule_rates=[
                ScheduleRate("S1", "DEN", None, 1, 10, 1.0, 1.0),
                ScheduleRate("S1", "DEN", None, 11, 100, 8.0, 8.0),
                ScheduleRate("S2", "DEN", None, None, None, 4.0, 2.0),
            ]
        )
        calc = self.calculate(certificate(), [txn()], rates=rates)
        self.assertEqual(calc.ledger[0].rate_percent, 8.0)

    def test_stage_one_failures(self) -> None:
        rows = certificate()
        calc = self.calculate(rows, [txn("T1", cert="C404"), txn("T2", amount=0.0)])
        traces = {t.transaction_id: t for t in calc.traceability}
        self.assertEqual((traces["T1"].status, traces["T1"].stage_reached), ("Failed", 1))
        self.assertIn("C404", traces["T1"].error_messages)
        self.assertEqual(traces["T2"].status, "Skipped")
        self.assertEqual(calc.ledger, [])

        calc = self.calculate(rows, [txn()], groups={})
        self.assertEqual(calc.failures[0].stage, 1)
        self.assertIn("group 0100 not found", calc.failures[0].reason)

    def test_stage_two_failure_before_first_proposal(self) -> None:
        calc = self.calculate(certificate(), [txn(when=date(2020, 6, 1))])
        [failure] = calc.failures
        self.assertEqual(failure.stage, 2)
        self.assertEqual(calc.traceability[0].stage_reached, 2)

    def test_open_proposal_governs_later_years(self) -> None:
        calc = self.calculate(certificate(), [txn(when=date(2030, 1, 15))])
        self.assertEqual(len(calc.ledger), 2)
        self.assertEqual(calc.ledger[0].proposal_id, "PROP-0100-1")

    def test_pairs_left_behind_by_a_new_configuration_still_resolve(self) -> None:
        rows = (
            certificate("C1", effective_date=date(2020, 1, 1))
            + certificate("C2", effective_date=date(2020, 1, 1), product_code="VIS", plan_code="V1")
            + certificate("C3", paid="X", effective_date=date(2023, 1, 1))
        )
        rates = schedule_rates()
        rates.schedule_rates += [
            ScheduleRate("S1", "VIS", None, None, None, 10.0, 5.0),
            ScheduleRate("S2", "VIS", None, None, None, 4.0, 2.0),
        ]
        calc = self.calculate(rows, [txn("T1", cert="C2", when=date(2024, 3, 1))], rates=rates)
        [trace] = calc.traceability
        self.assertEqual((trace.status, trace.stage_reached), ("Success", 8))
        self.assertEqual(
            [(e.broker_id, e.commission_amount, e.proposal_id) for e in calc.ledger],
            [("A", 25.0, "PROP-0100-1-CONT"), ("B", 10.0, "PROP-0100-1-CONT")],
        )

    def test_same_day_configurations_resolve_to_one_owner(self) -> None:
        rows = certificate("C1") + certificate("C2") + certificate("C3", paid="X")
        calc = self.calculate(rows, [txn("T1", cert="C3"), txn("T2", cert="C1")])
        self.assertEqual({e.proposal_id for e in calc.ledger}, {"PROP-0100-2"})
        self.assertTrue(all(e.entry_type == "Original" for e in calc.ledger))
        self.assertEqual([e.broker_id for e in calc.ledger], ["A", "B", "A", "B"])

    def test_fallback_resolution(self) -> None:
        rows = certificate(group="0000")
        calc = self.calculate(rows, [txn()])
        self.assertEqual([e.commission_amount for e in calc.ledger], [50.0, 20.0])
        self.assertIsNone(calc.ledger[0].proposal_id)
        self.assertEqual(calc.ledger[0].hierarchy_id, "H-PHA-C1-1")
        self.assertEqual(calc.traceability[0].resolution_kind, "fallback")

    def test_stage_three_split_mismatch_is_not_fatal(self) -> None:
        rows = certificate(split_percent=60.0) + [
            replace(r, split_sequence=2, split_percent=30.0, broker_id="Z") for r in certificate()[:1]
        ]
        calc = self.calculate(rows, [txn()])
        self.assertEqual([g.kind for g in calc.gaps], ["split_total_mismatch"])
        self.assertEqual(sorted({e.split_sequence for e in calc.ledger}), [1, 2])
        self.assertEqual(calc.ledger[0].split_premium_amount, 600.0)

    def test_stage_four_failure(self) -> None:
        rows = certificate()
        result = consolidate(rows, SCHEDULES)
        result.hierarchies.versions = [replace(v, status="inactive") for v in result.hierarchies.versions]
        calc = self.calculate(rows, [txn()], result=result)
        self.assertEqual([f.stage for f in calc.failures], [4])

    def test_stage_five_failure(self) -> None:
        rows = certificate()
        result = consolidate(rows, SCHEDULES)
        result.hierarchies.participants = []
        calc = self.calculate(rows, [txn()], result=result)
        self.assertEqual([f.stage for f in calc.failures], [5])
        self.assertEqual(calc.traceability[0].stage_reached, 5)

    def test_stage_six_failure_and_partial(self) -> None:
        calc = self.calculate(certificate(), [txn()], rates=RateTables())
        self.assertEqual([f.stage for f in calc.failures], [6, 6])
        self.assertEqual(calc.traceability[0].status, "Failed")

        rates = RateTables(schedule_rates=[ScheduleRate("S1", "DEN", None, None, None, 10.0, 5.0)])
        calc = self.calculate(certificate(), [txn()], rates=rates)
        self.assertEqual(len(calc.ledger), 1)
        self.assertEqual(calc.traceability[0].status, "Partial")
        self.assertEqual(calc.traceability[0].stage_reached, 8)

    def test_full_assignment_redirects_payout(self) -> None:
        calc = self.calculate(certificate(paid="X"), [txn()])
        self.assertEqual(
            [(e.broker_id, e.commission_amount, e.entry_type, e.source_broker_id) for e in calc.ledger],
            [("X", 50.0, "Assigned", "A"), ("B", 20.0, "Original", None)],
        )
        assigned = calc.broker_traceability[0]
        self.assertTrue(assigned.is_assigned)
        self.assertEqual(assigned.original_broker_id, "A")
        self.assertTrue(calc.traceability[0].has_assignments)

    def test_partial_assignment_keeps_original_share(self) -> None:
        rows = [replace(r, assigned_percent=50.0) if r.paid_broker_id else r for r in certificate(paid="X")]
        calc = self.calculate(rows, [txn()])
        self.assertEqual(
            [(e.broker_id, e.commission_amount, e.entry_type) for e in calc.ledger],
            [("A", 25.0, "Original"), ("X", 25.0, "Assigned"), ("B", 20.0, "Original")],
        )
        self.assertEqual(calc.ledger[0].assignment_version_id, calc.ledger[1].assignment_version_id)

    def test_stages_do_not_mutate_input_rows(self) -> None:
        rows = certificate()
        result = consolidate(rows, SCHEDULES)
        context, _ = premium_context([txn()], policies_from_rows(rows), GROUPS)
        resolved, _ = proposal_resolution(context, PipelineIndex(result))
        self.assertIsNone(context[0].resolution)
        self.assertIsInstance(resolved[0].resolution, ProposalResolution)
        self.assertTrue(context[0].is_first_year)
        self.assertNotIsInstance(resolved[0].resolution, FallbackResolution)


if __name__ == "__main__":
    unittest.main()
