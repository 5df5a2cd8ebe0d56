#!/usr/bin/env python3
"""Generate a synthetic certificate/premium snapshot.

Creates:
- data/raw/certificates/certificate_splits.csv
- data/raw/premiums/premium_transactions.csv
- data/reference/{schedules,brokers,groups}.csv
- data/reference/{schedule_rates,certificate_rates,migrated_rates}.csv

Besides random groups it always writes a few fixed cases: group 0006 with
one chain sold in OK and TX, group 0007 whose paid broker changes in 2023,
and certificates without a usable group id.
"""

from __future__ import annotations

import argparse
import csv
import random
from datetime import date, timedelta
from pathlib import Path
from typing import Iterable

PRODUCTS = {"DEN": ["D1", "D2"], "VIS": ["V1"], "LIFE": ["L1", "L2"], "STD": ["S1"]}
STATES = ["OK", "TX", "CA", "FL", "NY", "GA"]
SCHEDULES = ["5512A", "6013", "70175", "4410", "8802", "9001B"]
# Referenced on a few tiers but never written to schedules.csv.
UNKNOWN_SCHEDULE = "ZZ99"
FIRST_NAMES = [
    "John", "Maya", "Chris", "Taylor", "Avery",
    "Jordan", "Morgan", "Alex", "Riley", "Sam",
]
LAST_NAMES = [
    "Smith", "Johnson", "Davis", "Brown", "Garcia",
    "Wilson", "Moore", "Anderson", "Thomas", "Clark",
]
COMPANY_WORDS = ["Acme", "Harbor", "Summit", "Prairie", "Lakeside", "Granite", "Cedar", "Beacon"]

CERTIFICATE_FIELDS = [
    "group_id", "group_name", "certificate_id", "effective_date", "product_code",
    "plan_code", "status", "situs_state", "premium", "split_sequence", "split_percent",
    "tier_level", "broker_id", "broker_name", "schedule_code", "paid_broker_id",
    "paid_broker_name", "assigned_percent",
]


def random_name(rng: random.Random) -> str:
    return f"{rng.choice(FIRST_NAMES)} {rng.choice(LAST_NAMES)}"


def broker_id(idx: int) -> str:
    return f"P{10000 + idx}"


def iso(d: date) -> str:
    return d.isoformat()


def write_csv(path: Path, rows: Iterable[dict], fieldnames: list[str]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames)
        writer.writeheader()
        for row in rows:
            writer.writerow(row)


class CertificateWriter:
    def __init__(self, brokers: dict[str, str]) -> None:
        self.brokers = brokers
        self.rows: list[dict] = []
        self.count = 0

    def add(
        self,
        group_id: str,
        group_name: str,
        effective: date,
        product: str,
        plan: str,
        state: str,
        premium: float,
        splits: list[tuple[float, list[tuple[str, str]]]],
        paid: dict[str, str] | None = None,
        assigned_percent: float | None = None,
        status: str = "A",
    ) -> str:
        self.count += 1
        cert_id = f"C{self.count:07d}"
        paid = paid or {}
        for seq, (pct, chain) in enumerate(splits, start=1):
            for level, (broker, schedule) in enumerate(chain, start=1):
                paid_to = paid.get(broker, "")
                self.rows.append(
                    {
                        "group_id": group_id,
                        "group_name": group_name,
                        "certificate_id": cert_id,
                        "effective_date": iso(effective),
                        "product_code": product,
                        "plan_code": plan,
                        "status": status,
                        "situs_state": state,
                        "premium": f"{premium:.2f}",
                        "split_sequence": seq,
                        "split_percent": f"{pct:g}",
                        "tier_level": level,
                        "broker_id": broker,
                        "broker_name": self.brokers.get(broker, ""),
                        "schedule_code": schedule,
                        "paid_broker_id": paid_to,
                        "paid_broker_name": self.brokers.get(paid_to, ""),
                        "assigned_percent": "" if not paid_to or assigned_percent is None else f"{assigned_percent:g}",
                    }
                )
        return cert_id


def random_chain(rng: random.Random, broker_ids: list[str]) -> list[tuple[str, str]]:
    depth = rng.choice([1, 2, 2, 3, 3, 3])
    chain = []
    for broker in rng.sample(broker_ids, depth):
        schedule = UNKNOWN_SCHEDULE if rng.random() < 0.03 else rng.choice(SCHEDULES)
        chain.append((broker, schedule))
    return chain


def generate(args: argparse.Namespace) -> None:
    rng = random.Random(args.seed)
    brokers = {broker_id(i): random_name(rng) for i in range(1, args.brokers + 1)}
    broker_ids = sorted(brokers)
    certs = CertificateWriter(brokers)
    groups: list[dict] = []

    def add_group(group_id: str, name: str) -> None:
        groups.append({"group_id": group_id, "group_name": name, "group_size": rng.randint(5, 900)})

    # Group 0006: one chain, two situs states.
    add_group("0006", "Prairie Dental Cooperative")
    chain_0006 = [(broker_ids[0], "5512A"), (broker_ids[1], "6013"), (broker_ids[2], "70175")]
    for state in ("OK", "TX"):
        certs.add("0006", "Prairie Dental Cooperative", date(2021, 1, 1), "DEN", "D1", state, 120.0, [(100, chain_0006)])

    # Group 0007: paid broker changes on 2023-01-01.
    add_group("0007", "Harbor Logistics")
    chain_0007 = [(broker_ids[3], "4410"), (broker_ids[4], "8802")]
    for year in (2020, 2021, 2022):
        certs.add("0007", "Harbor Logistics", date(year, 3, 1), "LIFE", "L1", "FL", 80.0, [(100, chain_0007)],
                  paid={broker_ids[3]: broker_ids[5]})
    for year in (2023, 2024, 2025):
        certs.add("0007", "Harbor Logistics", date(year, 3, 1), "LIFE", "L1", "FL", 80.0, [(100, chain_0007)],
                  paid={broker_ids[3]: broker_ids[6]}, assigned_percent=50)

    # No usable group id: fallback path, one assignment per split.
    for bad_group in ("", "0000", "G000"):
        certs.add(bad_group, "", date(2022, 6, 1), "STD", "S1", "NY", 60.0,
                  [(60, random_chain(rng, broker_ids)), (40, random_chain(rng, broker_ids))])

    for idx in range(1, args.groups + 1):
        group_id = f"{100 + idx:04d}"
        name = f"{rng.choice(COMPANY_WORDS)} {rng.choice(LAST_NAMES)} Co"
        add_group(group_id, name)
        states = rng.sample(STATES, rng.choice([1, 1, 2, 3]))
        configs = [[(100.0, random_chain(rng, broker_ids))] for _ in range(rng.randint(1, 3))]
        if rng.random() < 0.2:
            configs.append([(60.0, random_chain(rng, broker_ids)), (40.0, random_chain(rng, broker_ids))])
        for _ in range(rng.randint(3, args.max_certificates)):
            product = rng.choice(sorted(PRODUCTS))
            effective = date(2020, 1, 1) + timedelta(days=rng.randint(0, 5 * 365))
            status = "T" if rng.random() < 0.05 else "A"
            certs.add(
                group_id, name, effective, product, rng.choice(PRODUCTS[product]), rng.choice(states),
                round(rng.uniform(20, 400), 2), rng.choice(configs), status=status,
            )

    cert_heads: dict[str, dict] = {}
    for row in certs.rows:
        cert_heads.setdefault(row["certificate_id"], row)

    premiums: list[dict] = []
    txn = 0
    for cert_id, head in cert_heads.items():
        start = date.fromisoformat(head["effective_date"])
        for k in range(args.premiums_per_certificate):
            txn += 1
            premiums.append(
                {
                    "transaction_id": f"T{txn:08d}",
                    "certificate_id": cert_id,
                    "transaction_date": iso(start + timedelta(days=120 * k)),
                    "premium_amount": head["premium"],
                }
            )
    # A refund and a premium for a certificate that is not in the snapshot.
    first_cert = next(iter(cert_heads))
    premiums.append({"transaction_id": f"T{txn + 1:08d}", "certificate_id": first_cert,
                     "transaction_date": "2023-05-01", "premium_amount": "-25.00"})
    premiums.append({"transaction_id": f"T{txn + 2:08d}", "certificate_id": "C9999999",
                     "transaction_date": "2023-05-01", "premium_amount": "50.00"})

    schedule_rates = []
    for schedule in SCHEDULES:
        for product in sorted(PRODUCTS):
            first_year = round(rng.uniform(4, 15), 2)
            schedule_rates.append({
                "schedule_code": schedule, "product_code": product, "state": "",
                "group_size_from": "", "group_size_to": "",
                "first_year_rate": first_year, "renewal_rate": round(first_year * 0.6, 2),
            })
        schedule_rates.append({
            "schedule_code": schedule, "product_code": "DEN", "state": "TX",
            "group_size_from": "", "group_size_to": "",
            "first_year_rate": 12.0, "renewal_rate": 8.0,
        })

    output = args.output
    write_csv(output / "raw/certificates/certificate_splits.csv", certs.rows, CERTIFICATE_FIELDS)
    write_csv(output / "raw/premiums/premium_transactions.csv", premiums,
              ["transaction_id", "certificate_id", "transaction_date", "premium_amount"])
    write_csv(output / "reference/schedules.csv",
              [{"id": i, "external_id": code} for i, code in enumerate(SCHEDULES, start=1)],
              ["id", "external_id"])
    write_csv(output / "reference/brokers.csv",
              [{"id": 10000 + i, "external_id": b, "name": brokers[b]} for i, b in enumerate(broker_ids, start=1)],
              ["id", "external_id", "name"])
    write_csv(output / "reference/groups.csv", groups, ["group_id", "group_name", "group_size"])
    write_csv(output / "reference/schedule_rates.csv", schedule_rates,
              ["schedule_code", "product_code", "state", "group_size_from", "group_size_to",
               "first_year_rate", "renewal_rate"])
    write_csv(output / "reference/certificate_rates.csv",
              [{"certificate_id": first_cert, "broker_id": broker_ids[0], "rate": 15.0}],
              ["certificate_id", "broker_id", "rate"])
    write_csv(output / "reference/migrated_rates.csv",
              [{"broker_id": broker_ids[4], "product_code": "LIFE", "rate": 7.5}],
              ["broker_id", "product_code", "rate"])

    print(f"Generated {len(cert_heads)} certificates ({len(certs.rows)} split rows) in {len(groups)} groups")
    print(f"  Premium transactions: {len(premiums)}")
    print(f"  Output: {output}")


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Generate a synthetic certificate snapshot.")
    p.add_argument("--seed", type=int, default=42)
    p.add_argument("--groups", type=int, default=40)
    p.add_argument("--brokers", type=int, default=30)
    p.add_argument("--max-certificates", type=int, default=15)
    p.add_argument("--premiums-per-certificate", type=int, default=3)
    p.add_argument("--output", type=Path, default=Path("data"))
    return p.parse_args()


if __name__ == "__main__":
    generate(parse_args())
