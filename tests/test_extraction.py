from __future__ import annotations

import unittest
from datetime import date

from commission_engine.extraction import extract_selection_criteria, group_by_certificate, hierarchy_usage
from commission_engine.hashing import StructureHasher
from commission_engine.models import CertificateSplitRow


def split_row(cert: str, seq: int, level: int, broker: str, **kw) -> CertificateSplitRow:
    values = dict(
        group_id="0100",
        certificate_id=cert,
        effective_date=date(2021, 1, 1),
        product_code="DEN",
        plan_code="D1",
        split_sequence=seq,
        split_percent=100.0,
        tier_level=level,
        broker_id=broker,
        schedule_code="S1",
        situs_state="OK",
    )
    values.update(kw)
    return CertificateSplitRow(**values)


class ExtractionTests(unittest.TestCase):
    def test_group_by_certificate_is_single_pass(self) -> None:
        rows = [split_row("C1", 1, 1, "A"), split_row("C2", 1, 1, "A"), split_row("C1", 1, 2, "B")]
        grouped = group_by_certificate(rows)
        self.assertEqual(sorted(grouped), ["C1", "C2"])
        self.assertEqual([r.broker_id for r in grouped["C1"]], ["A", "B"])

    def test_tiers_and_splits_are_ordered(self) -> None:
        rows = [
            split_row("C1", 2, 2, "D", split_percent=40.0),
            split_row("C1", 1, 2, "B", split_percent=60.0),
            split_row("C1", 2, 1, "C", split_percent=40.0),
            split_row("C1", 1, 1, "A", split_percent=60.0),
        ]
        [criteria] = extract_selection_criteria(rows, StructureHasher())
        self.assertEqual([s.split_sequence for s in criteria.splits], [1, 2])
        self.assertEqual([t.broker_id for t in criteria.splits[0].tiers], ["A", "B"])
        self.assertEqual([t.broker_id for t in criteria.splits[1].tiers], ["C", "D"])
        self.assertEqual(criteria.total_split_percent, 100.0)
        self.assertEqual(criteria.splits[0].writing_broker_id, "A")

    def test_identical_certificates_share_config_hash(self) -> None:
        rows = [
            split_row("C1", 1, 1, "A"),
            split_row("C1", 1, 2, "B"),
            split_row("C2", 1, 1, "A", situs_state="TX", effective_date=date(2022, 5, 1)),
            split_row("C2", 1, 2, "B", situs_state="TX", effective_date=date(2022, 5, 1)),
            split_row("C3", 1, 1, "A"),
        ]
        criteria = {c.certificate_id: c for c in extract_selection_criteria(rows, StructureHasher())}
        self.assertEqual(criteria["C1"].config_hash, criteria["C2"].config_hash)
        self.assertNotEqual(criteria["C1"].config_hash, criteria["C3"].config_hash)

    def test_hierarchy_usage_collects_states_and_products(self) -> None:
        rows = [
            split_row("C1", 1, 1, "A"),
            split_row("C2", 1, 1, "A", situs_state="TX", product_code="VIS", plan_code="V1"),
        ]
        criteria = extract_selection_criteria(rows, StructureHasher())
        usage = hierarchy_usage(criteria)
        self.assertEqual(len(usage), 1)
        [entry] = usage.values()
        self.assertEqual(entry.states, {"OK", "TX"})
        self.assertEqual(entry.products, {"DEN", "VIS"})
        self.assertEqual(entry.products_by_state["TX"], {"VIS"})


if __name__ == "__main__":
    unittest.main()
