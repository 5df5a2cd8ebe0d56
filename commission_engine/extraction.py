"""Selection-criteria extraction: flat split rows -> one criteria per certificate."""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable

from commission_engine.hashing import StructureHasher
from commission_engine.models import (
    CertificateSplitRow,
    HierarchyTier,
    SelectionCriteria,
    SplitParticipant,
)

logger = logging.getLogger(__name__)

PROGRESS_EVERY = 10_000


@dataclass
class HierarchyUsage:
    states: set[str] = field(default_factory=set)
    products: set[str] = field(default_factory=set)
    products_by_state: dict[str, set[str]] = field(default_factory=lambda: defaultdict(set))


def group_by_certificate(rows: Iterable[CertificateSplitRow]) -> dict[str, list[CertificateSplitRow]]:
    by_cert: dict[str, list[CertificateSplitRow]] = defaultdict(list)
    for row in rows:
        by_cert[row.certificate_id].append(row)
    return by_cert


def build_splits(
    cert_rows: list[CertificateSplitRow], hasher: StructureHasher
) -> list[SplitParticipant]:
    by_seq: dict[int, list[CertificateSplitRow]] = defaultdict(list)
    for row in cert_rows:
        by_seq[row.split_sequence].append(row)

    splits: list[SplitParticipant] = []
    for seq in sorted(by_seq):
        split_rows = sorted(by_seq[seq], key=lambda r: r.tier_level)
        tiers = tuple(
            HierarchyTier(
                level=r.tier_level,
                broker_id=r.broker_id,
                schedule_code=r.schedule_code,
                broker_name=r.broker_name,
                paid_broker_id=r.paid_broker_id,
                paid_broker_name=r.paid_broker_name,
                assigned_percent=r.assigned_percent,
            )
            for r in split_rows
        )
        context = f"hierarchy {split_rows[0].certificate_id}/{seq}"
        splits.append(
            SplitParticipant(
                split_sequence=seq,
                split_percent=split_rows[0].split_percent,
                tiers=tiers,
                hierarchy_hash=hasher.hash_tiers(tiers, context),
            )
        )
    return splits


def extract_selection_criteria(
    rows: Iterable[CertificateSplitRow], hasher: StructureHasher
) -> list[SelectionCriteria]:
    started = time.perf_counter()
    by_cert = group_by_certificate(rows)
    total = len(by_cert)
    logger.info("extracting selection criteria for %d certificates", total)

    criteria: list[SelectionCriteria] = []
    for processed, (certificate_id, cert_rows) in enumerate(by_cert.items(), start=1):
        if processed % PROGRESS_EVERY == 0:
            logger.info("  progress %d/%d (%.1f%%)", processed, total, processed / total * 100)
        head = cert_rows[0]
        splits = build_splits(cert_rows, hasher)
        criteria.append(
            SelectionCriteria(
                certificate_id=certificate_id,
                group_id=head.group_id,
                group_name=head.group_name,
                effective_date=head.effective_date,
                product_code=head.product_code,
                plan_code=head.plan_code,
                situs_state=head.situs_state,
                splits=splits,
                config_hash=hasher.hash_config(splits, f"config {certificate_id}"),
            )
        )

    logger.info(
        "extracted %d selection criteria in %.2fs", len(criteria), time.perf_counter() - started
    )
    return criteria


def hierarchy_usage(criteria: Iterable[SelectionCriteria]) -> dict[str, HierarchyUsage]:
    """Distinct situs states and product codes seen per hierarchy hash."""
    usage: dict[str, HierarchyUsage] = defaultdict(HierarchyUsage)
    for c in criteria:
        for split in c.splits:
            entry = usage[split.hierarchy_hash]
            entry.products.add(c.product_code)
            if c.situs_state:
                entry.states.add(c.situs_state)
                entry.products_by_state[c.situs_state].add(c.product_code)
    return usage
