"""Coverage summary PDF for a consolidation run."""

from __future__ import annotations

from collections import Counter
from pathlib import Path
from typing import Any, BinaryIO

from reportlab.lib import colors
from reportlab.lib.pagesizes import letter
from reportlab.pdfgen import canvas

HEADER_COLOR = "#1e3a5f"
STAT_LABELS = [
    ("certificates", "Certificates"),
    ("proposals", "Proposals"),
    ("continuation_proposals", "Continuation proposals"),
    ("hierarchies", "Hierarchies (deduplicated)"),
    ("fallback_hierarchies", "Fallback hierarchies"),
    ("fallback_assignments", "Policy hierarchy assignments"),
    ("commission_assignments", "Commission assignments"),
    ("hash_entries", "Distinct content hashes"),
    ("split_distributions", "Split distributions"),
    ("distribution_coverage_pct", "Distribution coverage %"),
    ("gaps", "Data quality gaps"),
]


def render_coverage_pdf(
    target: Path | BinaryIO,
    run_id: str,
    stats: dict[str, Any],
    gaps: list[dict[str, Any]],
) -> None:
    if isinstance(target, Path):
        target.parent.mkdir(parents=True, exist_ok=True)
        target = str(target)  # type: ignore[assignment]
    w, h = letter
    c = canvas.Canvas(target, pagesize=letter)

    def draw_header(page_num: int) -> float:
        c.setFillColor(colors.HexColor(HEADER_COLOR))
        c.rect(0, h - 70, w, 70, fill=True, stroke=False)
        c.setFillColor(colors.white)
        c.setFont("Helvetica-Bold", 16)
        c.drawString(40, h - 35, "Commission Consolidation Coverage")
        c.setFont("Helvetica", 9)
        c.drawString(40, h - 52, f"Run {run_id}")
        c.drawRightString(w - 40, h - 35, f"Page {page_num}")
        c.setFillColor(colors.black)
        return h - 100

    page = 1
    y = draw_header(page)

    c.setFont("Helvetica-Bold", 10)
    c.drawString(40, y, "Run statistics")
    y -= 18
    c.setFont("Helvetica", 9)
    for key, label in STAT_LABELS:
        c.drawString(50, y, label)
        c.drawRightString(300, y, str(stats.get(key, "-")))
        y -= 14

    y -= 10
    c.setFont("Helvetica-Bold", 10)
    c.drawString(40, y, "Gaps by kind")
    y -= 18
    c.setFont("Helvetica", 9)
    by_kind = Counter(g["kind"] for g in gaps)
    if not by_kind:
        c.drawString(50, y, "none")
        y -= 14
    for kind, count in sorted(by_kind.items()):
        c.drawString(50, y, kind)
        c.drawRightString(300, y, str(count))
        y -= 14

    if gaps:
        y -= 10
        c.setFillColor(colors.HexColor("#e8edf2"))
        c.rect(30, y - 4, w - 60, 16, fill=True, stroke=False)
        c.setFillColor(colors.HexColor(HEADER_COLOR))
        c.setFont("Helvetica-Bold", 7.5)
        cols = [35, 150, 250, 400]
        for x, hdr in zip(cols, ["Kind", "Entity type", "Entity", "Detail"]):
            c.drawString(x, y, hdr)
        y -= 16
        c.setFillColor(colors.black)
        c.setFont("Helvetica", 7.5)
        for gap in gaps:
            if y < 60:
                c.showPage()
                page += 1
                y = draw_header(page)
                c.setFont("Helvetica", 7.5)
            c.drawString(cols[0], y, gap["kind"])
            c.drawString(cols[1], y, gap["entity_type"])
            c.drawString(cols[2], y, str(gap["entity_id"])[:34])
            c.drawString(cols[3], y, str(gap["detail"])[:40])
            y -= 12

    c.showPage()
    c.save()
