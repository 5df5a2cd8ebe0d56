from __future__ import annotations

import csv
import tempfile
import unittest
from datetime import date
from pathlib import Path

from commission_engine.errors import SnapshotError
from commission_engine.loader import (
    CERTIFICATE_FIELDS,
    CERTIFICATES_CSV,
    broker_number,
    load_certificate_rows,
    load_snapshot,
    parse_date,
)


def write_csv(path: Path, rows: list[dict], fieldnames: list[str]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames)
        writer.writeheader()
        for row in rows:
            writer.writerow(row)


def cert_row(**kw) -> dict:
    row = {
        "group_id": "0006",
        "group_name": "Prairie",
        "certificate_id": "C1",
        "effective_date": "2021-01-01",
        "product_code": "DEN",
        "plan_code": "D1",
        "status": "A",
        "situs_state": "ok",
        "premium": "120.00",
        "split_sequence": "1",
        "split_percent": "100",
        "tier_level": "1",
        "broker_id": "P13178",
        "broker_name": "Jordan Clark",
        "schedule_code": " 5512A ",
        "paid_broker_id": "",
        "paid_broker_name": "",
        "assigned_percent": "",
    }
    row.update(kw)
    return row


class LoaderTests(unittest.TestCase):
    def test_rows_are_parsed_and_filtered(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "certs.csv"
            write_csv(
                path,
                [cert_row(), cert_row(certificate_id="C2", status="T"), cert_row(certificate_id="C3", effective_date="03/15/2022")],
                CERTIFICATE_FIELDS,
            )
            rows = load_certificate_rows(path)
        self.assertEqual([r.certificate_id for r in rows], ["C1", "C3"])
        self.assertEqual(rows[0].situs_state, "OK")
        self.assertIsNone(rows[0].paid_broker_id)
        self.assertIsNone(rows[0].assigned_percent)
        self.assertEqual(rows[0].schedule_code, "5512A")
        self.assertEqual(rows[1].effective_date, date(2022, 3, 15))

    def test_bad_date_reports_file_and_line(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "certs.csv"
            write_csv(path, [cert_row(), cert_row(effective_date="not-a-date")], CERTIFICATE_FIELDS)
            with self.assertRaises(SnapshotError) as ctx:
                load_certificate_rows(path)
        self.assertEqual(ctx.exception.line, 3)
        self.assertIn("effective_date", str(ctx.exception))

    def test_missing_required_value(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "certs.csv"
            write_csv(path, [cert_row(broker_id="")], CERTIFICATE_FIELDS)
            with self.assertRaises(SnapshotError) as ctx:
                load_certificate_rows(path)
        self.assertEqual(ctx.exception.line, 2)
        self.assertIn("broker_id", str(ctx.exception))

    def test_bad_number(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "certs.csv"
            write_csv(path, [cert_row(split_percent="abc")], CERTIFICATE_FIELDS)
            with self.assertRaises(SnapshotError):
                load_certificate_rows(path)

    def test_snapshot_with_missing_reference_files(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            data = Path(tmp)
            write_csv(data / CERTIFICATES_CSV, [cert_row()], CERTIFICATE_FIELDS)
            snapshot = load_snapshot(data)
        self.assertEqual(len(snapshot.rows), 1)
        self.assertEqual(snapshot.schedules, {})
        self.assertEqual(snapshot.premiums, [])
        self.assertEqual(list(snapshot.policies), ["C1"])

    def test_broker_number(self) -> None:
        self.assertEqual(broker_number("P13178"), 13178)
        self.assertEqual(broker_number("P13178", {"P13178": 7}), 7)
        self.assertIsNone(broker_number("AGENCY"))
        self.assertIsNone(broker_number("  "))

    def test_parse_date_formats(self) -> None:
        self.assertEqual(parse_date("2021-02-03"), date(2021, 2, 3))
        self.assertEqual(parse_date("2021-02-03T00:00:00"), date(2021, 2, 3))
        self.assertEqual(parse_date("2/3/2021"), date(2021, 2, 3))


if __name__ == "__main__":
    unittest.main()
