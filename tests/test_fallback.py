from __future__ import annotations

import unittest
from datetime import date

from commission_engine.consolidation import consolidate
from commission_engine.models import CertificateSplitRow
from commission_engine.proposals import INVALID_GROUP_REASON


def certificate(cert: str, group: str | None, splits: int, effective: date = date(2022, 6, 1)) -> list[CertificateSplitRow]:
    rows = []
    for seq in range(1, splits + 1):
        for level, (broker, schedule) in enumerate((("P1", "S1"), ("P2", "S2")), start=1):
            rows.append(
                CertificateSplitRow(
                    group_id=group,
                    certificate_id=cert,
                    effective_date=effective,
                    product_code="STD",
                    plan_code="S1",
                    split_sequence=seq,
                    split_percent=round(100.0 / splits, 4),
                    tier_level=level,
                    broker_id=broker,
                    schedule_code=schedule,
                    situs_state="NY",
                )
            )
    return rows


class FallbackTests(unittest.TestCase):
    def test_one_assignment_and_hierarchy_per_split(self) -> None:
        result = consolidate(certificate("C1", "0000", splits=5), {"S1": 1, "S2": 2})
        self.assertEqual(result.proposals, [])
        self.assertEqual(len(result.fallback_assignments), 5)
        hierarchy_ids = {a.hierarchy_id for a in result.fallback_assignments}
        self.assertEqual(len(hierarchy_ids), 5)
        fallback = [h for h in result.hierarchies.hierarchies if h.is_fallback]
        self.assertEqual(len(fallback), len(result.fallback_assignments))
        self.assertEqual(sorted(hierarchy_ids), sorted(h.id for h in fallback))
        self.assertEqual(len(result.fallback_participants), 10)
        self.assertTrue(all(a.reason == INVALID_GROUP_REASON for a in result.fallback_assignments))

    def test_identical_chains_are_not_shared(self) -> None:
        rows = certificate("C1", "", splits=1) + certificate("C2", "G000", splits=1) + certificate("C3", None, splits=1)
        result = consolidate(rows, {"S1": 1, "S2": 2})
        self.assertEqual(len(result.fallback_assignments), 3)
        self.assertEqual(len({a.hierarchy_id for a in result.fallback_assignments}), 3)
        # All three chains hash the same; only identity differs.
        self.assertEqual(len({h.hierarchy_hash for h in result.hierarchies.hierarchies}), 1)

    def test_fallback_ids_and_dates(self) -> None:
        result = consolidate(certificate("C9", "0", splits=2, effective=date(2021, 9, 15)), {"S1": 1, "S2": 2})
        self.assertEqual(
            [a.id for a in result.fallback_assignments], ["PHA-C9-1", "PHA-C9-2"]
        )
        self.assertEqual(
            [a.hierarchy_id for a in result.fallback_assignments], ["H-PHA-C9-1", "H-PHA-C9-2"]
        )
        for version in result.hierarchies.versions:
            self.assertEqual(version.effective_from, date(2021, 9, 15))
        self.assertEqual(result.fallback_participants[0].id, "PHP-C9-1-L1")
        self.assertEqual(result.stats["fallback_assignments"], 2)
        self.assertEqual(result.stats["fallback_hierarchies"], 2)

    def test_conformant_and_fallback_kept_apart(self) -> None:
        rows = certificate("C1", "0100", splits=1) + certificate("C2", "0000", splits=1)
        result = consolidate(rows, {"S1": 1, "S2": 2})
        self.assertEqual(len(result.proposals), 1)
        self.assertEqual(result.stats["hierarchies"], 1)
        self.assertEqual(result.stats["fallback_hierarchies"], 1)
        invalid = [g for g in result.gaps if g.kind == "invalid_group"]
        self.assertEqual([g.entity_id for g in invalid], ["C2"])


if __name__ == "__main__":
    unittest.main()
