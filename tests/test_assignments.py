from __future__ import annotations

import unittest
from datetime import date

from commission_engine.consolidation import consolidate
from commission_engine.models import CertificateSplitRow


def tier(cert: str, seq: int, level: int, broker: str, paid: str | None = None, **kw) -> CertificateSplitRow:
    values = dict(
        group_id="0007",
        certificate_id=cert,
        effective_date=date(2021, 3, 1),
        product_code="LIFE",
        plan_code="L1",
        split_sequence=seq,
        split_percent=100.0,
        tier_level=level,
        broker_id=broker,
        schedule_code="S1",
        situs_state="FL",
        paid_broker_id=paid,
    )
    values.update(kw)
    return CertificateSplitRow(**values)


class CommissionAssignmentTests(unittest.TestCase):
    def test_redirect_creates_full_assignment(self) -> None:
        result = consolidate([tier("C1", 1, 1, "P1", paid="P9"), tier("C1", 1, 2, "P2")], {"S1": 1})
        [version] = result.assignment_versions
        [recipient] = result.assignment_recipients
        [proposal] = result.proposals
        self.assertEqual(version.id, "CAV-PROP-0007-1-P1-P9")
        self.assertEqual(version.proposal_id, proposal.id)
        self.assertEqual(version.source_broker_id, "P1")
        self.assertEqual(version.source_broker_number, 1)
        self.assertEqual((version.effective_from, version.effective_to), (proposal.effective_from, proposal.effective_to))
        self.assertEqual(version.total_assigned_percent, 100.0)
        self.assertEqual(recipient.version_id, version.id)
        self.assertEqual(recipient.recipient_broker_id, "P9")
        self.assertEqual(recipient.percentage, 100.0)

    def test_self_payment_is_not_an_assignment(self) -> None:
        result = consolidate([tier("C1", 1, 1, "P1", paid="P1"), tier("C1", 1, 2, "P2", paid=" ")], {"S1": 1})
        self.assertEqual(result.assignment_versions, [])

    def test_pairs_deduplicated_per_proposal(self) -> None:
        rows = [
            tier("C1", 1, 1, "P1", paid="P9", split_percent=50.0),
            tier("C1", 2, 1, "P3", split_percent=50.0),
            tier("C1", 2, 2, "P1", paid="P9", split_percent=50.0),
        ]
        result = consolidate(rows, {"S1": 1})
        self.assertEqual(len(result.assignment_versions), 1)

    def test_explicit_percentage_is_partial(self) -> None:
        result = consolidate([tier("C1", 1, 1, "P1", paid="P9", assigned_percent=40.0)], {"S1": 1})
        [version] = result.assignment_versions
        self.assertEqual(version.total_assigned_percent, 40.0)
        self.assertEqual(result.assignment_recipients[0].percentage, 40.0)

    def test_each_proposal_scopes_its_own_assignment(self) -> None:
        rows = [
            tier("C1", 1, 1, "P1", paid="P8", effective_date=date(2020, 3, 1)),
            tier("C2", 1, 1, "P1", paid="P9", effective_date=date(2023, 3, 1)),
        ]
        result = consolidate(rows, {"S1": 1})
        self.assertEqual(len(result.proposals), 2)
        windows = {
            v.proposal_id: (v.source_broker_id, result.assignment_recipients[i].recipient_broker_id, v.effective_to)
            for i, v in enumerate(result.assignment_versions)
        }
        self.assertEqual(windows["PROP-0007-1"], ("P1", "P8", date(2023, 2, 28)))
        self.assertEqual(windows["PROP-0007-2"], ("P1", "P9", None))


if __name__ == "__main__":
    unittest.main()
