"""Proposal consolidation.

Certificates are grouped by (GroupId, ConfigHash). Each distinct pair becomes
one Proposal whose date range and product/plan sets grow to cover every
member certificate. Inside a group, a later proposal that shares a
product/plan pair with an earlier one closes the earlier proposal's window
the day before it starts, so a configuration change (including a change of
who is paid) always opens a new Proposal instead of editing the old one.
Pairs the newer proposal does not carry continue under the old
configuration in a continuation proposal.
"""

from __future__ import annotations

import logging
import re
import time
from collections import defaultdict
from datetime import date, timedelta
from typing import Iterable

from commission_engine.loader import broker_number
from commission_engine.models import (
    PremiumSplitParticipant,
    PremiumSplitVersion,
    Proposal,
    ProposalKeyMapping,
    SelectionCriteria,
)

logger = logging.getLogger(__name__)

INVALID_GROUP_REASON = "Invalid GroupId (null/empty/zeros)"

_ALL_ZEROS = re.compile(r"^G?0+$", re.IGNORECASE)


def is_valid_group(group_id: str | None) -> bool:
    if group_id is None:
        return False
    trimmed = group_id.strip()
    if not trimmed:
        return False
    return not _ALL_ZEROS.match(trimmed)


def partition_by_group(
    criteria: Iterable[SelectionCriteria],
) -> tuple[list[SelectionCriteria], list[SelectionCriteria]]:
    """Split criteria into (conformant, diverted-to-fallback)."""
    conformant: list[SelectionCriteria] = []
    diverted: list[SelectionCriteria] = []
    for c in criteria:
        (conformant if is_valid_group(c.group_id) else diverted).append(c)
    return conformant, diverted


def _absorb(proposal: Proposal, c: SelectionCriteria) -> None:
    if c.product_code not in proposal.product_codes:
        proposal.product_codes.append(c.product_code)
    if c.plan_code not in proposal.plan_codes:
        proposal.plan_codes.append(c.plan_code)
    proposal.product_plan_pairs.add((c.product_code, c.plan_code))
    if c.situs_state:
        proposal.situs_states.add(c.situs_state)
    if c.effective_date < proposal.first_effective_date:
        proposal.first_effective_date = c.effective_date
    if c.effective_date > proposal.last_effective_date:
        proposal.last_effective_date = c.effective_date
    proposal.certificate_ids.append(c.certificate_id)


def build_proposals(criteria: Iterable[SelectionCriteria]) -> list[Proposal]:
    """Group conformant criteria into proposals with closed date windows.

    Callers must pass only criteria with a valid group id (see
    :func:`partition_by_group`).
    """
    started = time.perf_counter()
    by_key: dict[tuple[str, str], Proposal] = {}
    for c in criteria:
        group_id = (c.group_id or "").strip()
        key = (group_id, c.config_hash)
        proposal = by_key.get(key)
        if proposal is None:
            proposal = Proposal(
                id="",
                group_id=group_id,
                group_name=c.group_name,
                config_hash=c.config_hash,
                splits=list(c.splits),
                first_effective_date=c.effective_date,
                last_effective_date=c.effective_date,
                effective_from=c.effective_date,
            )
            by_key[key] = proposal
        _absorb(proposal, c)

    by_group: dict[str, list[Proposal]] = defaultdict(list)
    for proposal in by_key.values():
        by_group[proposal.group_id].append(proposal)

    out: list[Proposal] = []
    for group_id in sorted(by_group):
        # On a shared start date the proposal with more certificates sorts last
        # and so owns the shared product/plan pairs.
        group = sorted(
            by_group[group_id],
            key=lambda p: (p.first_effective_date, len(p.certificate_ids), p.config_hash),
        )
        for n, proposal in enumerate(group, start=1):
            proposal.id = f"PROP-{group_id}-{n}"
            proposal.product_codes.sort()
            proposal.plan_codes.sort()
            proposal.certificate_ids.sort()
        out.extend(group)
        out.extend(close_date_ranges(group))

    logger.info(
        "built %d proposals across %d groups in %.2fs",
        len(out),
        len(by_group),
        time.perf_counter() - started,
    )
    return out


def _continuation(current: Proposal, start: date, pairs: set[tuple[str, str]]) -> Proposal:
    return Proposal(
        id=f"{current.id}-CONT",
        group_id=current.group_id,
        group_name=current.group_name,
        config_hash=current.config_hash,
        splits=list(current.splits),
        first_effective_date=start,
        last_effective_date=max(current.last_effective_date, start),
        effective_from=start,
        product_codes=sorted({product for product, _ in pairs}),
        plan_codes=sorted({plan for _, plan in pairs}),
        product_plan_pairs=set(pairs),
        situs_states=set(current.situs_states),
        certificate_ids=list(current.certificate_ids),
        continues_id=current.continues_id or current.id,
    )


def close_date_ranges(group: list[Proposal]) -> list[Proposal]:
    """Set effective windows for the proposals of one group.

    ``group`` is in id order. A proposal is closed the day before the first
    later proposal that shares a product/plan pair with it. The pairs the
    closing proposal does not carry continue in a ``-CONT`` proposal that
    starts on the closing proposal's start date and is closed by the same
    rule. A later proposal starting on the same day leaves the earlier one
    with an empty window. Returns the continuation proposals.
    """
    for proposal in group:
        proposal.effective_from = proposal.first_effective_date
        proposal.effective_to = None

    continuations: list[Proposal] = []
    pending: list[tuple[int, Proposal]] = list(enumerate(group))
    while pending:
        position, current = pending.pop(0)
        closing = next(
            (
                (j, later)
                for j, later in enumerate(group[position + 1 :], start=position + 1)
                if current.product_plan_pairs & later.product_plan_pairs
            ),
            None,
        )
        if closing is None:
            continue
        j, later = closing
        current.effective_to = later.first_effective_date - timedelta(days=1)
        logger.debug("%s closed on %s by %s", current.id, current.effective_to, later.id)
        remaining = current.product_plan_pairs - later.product_plan_pairs
        if remaining:
            continuation = _continuation(current, later.first_effective_date, remaining)
            continuations.append(continuation)
            pending.append((j, continuation))
    return continuations


def _mapping_years(proposal: Proposal) -> range:
    if not proposal.has_window:
        return range(0)
    end = proposal.last_effective_date
    if proposal.effective_to is not None and proposal.effective_to > end:
        end = proposal.effective_to
    return range(proposal.effective_from.year, end.year + 1)


def build_key_mappings(proposals: Iterable[Proposal]) -> list[ProposalKeyMapping]:
    mappings: list[ProposalKeyMapping] = []
    for p in proposals:
        for year in _mapping_years(p):
            for product_code, plan_code in sorted(p.product_plan_pairs):
                mappings.append(
                    ProposalKeyMapping(
                        group_id=p.group_id,
                        effective_year=year,
                        product_code=product_code,
                        plan_code=plan_code,
                        proposal_id=p.id,
                        config_hash=p.config_hash,
                    )
                )
    return mappings


def build_premium_splits(
    proposals: Iterable[Proposal],
    hierarchy_ids: dict[str, str],
    brokers: dict[str, int] | None = None,
) -> tuple[list[PremiumSplitVersion], list[PremiumSplitParticipant]]:
    versions: list[PremiumSplitVersion] = []
    participants: list[PremiumSplitParticipant] = []
    for p in proposals:
        version_id = f"PSV-{p.id}"
        versions.append(
            PremiumSplitVersion(
                id=version_id,
                proposal_id=p.id,
                group_id=p.group_id,
                effective_from=p.effective_from,
                effective_to=p.effective_to,
                total_split_percent=round(sum(s.split_percent for s in p.splits), 4),
            )
        )
        for split in p.splits:
            participants.append(
                PremiumSplitParticipant(
                    id=f"PSP-{p.id}-{split.split_sequence}",
                    version_id=version_id,
                    sequence=split.split_sequence,
                    split_percent=split.split_percent,
                    hierarchy_id=hierarchy_ids[split.hierarchy_hash],
                    writing_broker_id=split.writing_broker_id,
                    writing_broker_number=broker_number(split.writing_broker_id, brokers),
                    writing_broker_name=split.writing_broker_name,
                )
            )
    return versions, participants
