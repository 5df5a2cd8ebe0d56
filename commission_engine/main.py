from __future__ import annotations

import io
import logging
import os
import uuid
from datetime import UTC, datetime
from pathlib import Path

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.responses import Response

from commission_engine.config import load_settings
from commission_engine.consolidation import ConsolidationResult, consolidate
from commission_engine.errors import HashCollision, SnapshotError
from commission_engine.loader import Snapshot, load_snapshot
from commission_engine.logging_utils import configure_logging
from commission_engine.persistence import (
    ENTITY_TABLES,
    get_run_stats,
    init_db,
    latest_run_id,
    list_entities,
    list_gaps,
    list_runs,
    list_traceability,
    run_exists,
    save_calculation_run,
    save_consolidation_run,
)
from commission_engine.pipeline import run_calculation
from commission_engine.report import render_coverage_pdf

logger = logging.getLogger(__name__)

_config = os.getenv("COMMISSION_CONFIG")
SETTINGS = load_settings(Path(_config) if _config else None)
DATA_DIR = SETTINGS.data_dir
DB_PATH = SETTINGS.db_path

TRACE_STATUSES = {"Success", "Partial", "Failed", "Skipped"}

app = FastAPI(title="Commission Consolidation Engine", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:8001"],
    allow_methods=["*"],
    allow_headers=["*"],
)


class ConsolidationRunRequest(BaseModel):
    data_dir: str | None = None
    calculate: bool = False


class CalculationRunRequest(BaseModel):
    run_id: str | None = None
    data_dir: str | None = None


def new_run_id(prefix: str = "run") -> str:
    return f"{datetime.now(UTC).strftime(f'{prefix}-%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:8]}"


def _load(data_dir: str | None) -> tuple[Path, Snapshot]:
    path = Path(data_dir) if data_dir else DATA_DIR
    if not path.exists():
        raise HTTPException(status_code=400, detail=f"data dir not found: {path}")
    try:
        return path, load_snapshot(path, SETTINGS.active_statuses)
    except SnapshotError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _consolidate(snapshot: Snapshot) -> ConsolidationResult:
    try:
        return consolidate(snapshot.rows, snapshot.schedules, snapshot.brokers, SETTINGS)
    except HashCollision as exc:
        logger.error("consolidation aborted: %s", exc)
        raise HTTPException(status_code=409, detail=str(exc)) from exc


def _calculate(run_id: str, snapshot: Snapshot, result: ConsolidationResult) -> dict:
    calc_run_id = new_run_id("calc")
    calc = run_calculation(
        result, snapshot.premiums, snapshot.policies, snapshot.groups, snapshot.rates, SETTINGS
    )
    stored = save_calculation_run(DB_PATH, calc_run_id, run_id, calc)
    return {"calc_run_id": calc_run_id, "summary": calc.summary(), "stored_counts": stored}


@app.get("/health")
def health() -> JSONResponse:
    return JSONResponse({"ok": True, "service": "commission-consolidation"})


@app.get("/api/v1/health")
def api_health() -> JSONResponse:
    return JSONResponse({"ok": True})


@app.post("/api/v1/consolidation-runs")
def api_create_consolidation_run(payload: ConsolidationRunRequest | None = None) -> JSONResponse:
    payload = payload or ConsolidationRunRequest()
    data_dir, snapshot = _load(payload.data_dir)
    result = _consolidate(snapshot)
    run_id = new_run_id()
    stored = save_consolidation_run(DB_PATH, run_id, result, data_dir)
    body = {"ok": True, "run_id": run_id, "stats": result.stats, "stored_counts": stored}
    if payload.calculate:
        body["calculation"] = _calculate(run_id, snapshot, result)
    return JSONResponse(body)


@app.get("/api/v1/consolidation-runs")
def api_list_consolidation_runs(limit: int = 50) -> JSONResponse:
    rows = list_runs(DB_PATH, limit=limit)
    return JSONResponse({"rows": rows, "count": len(rows)})


@app.get("/api/v1/consolidation-runs/{run_id}")
def api_consolidation_run(run_id: str) -> JSONResponse:
    stats = get_run_stats(DB_PATH, run_id)
    if stats is None:
        raise HTTPException(status_code=404, detail=f"run not found: {run_id}")
    return JSONResponse({"run_id": run_id, "stats": stats})


@app.get("/api/v1/entities/{table}")
def api_entities(table: str, run_id: str | None = None, limit: int = 500) -> JSONResponse:
    if table not in ENTITY_TABLES:
        raise HTTPException(status_code=404, detail=f"unknown entity table: {table}")
    if run_id and not run_exists(DB_PATH, run_id):
        raise HTTPException(status_code=404, detail=f"run not found: {run_id}")
    rows, used_run = list_entities(DB_PATH, table, run_id=run_id, limit=limit)
    return JSONResponse({"rows": rows, "count": len(rows), "run_id": used_run})


@app.get("/api/v1/gaps")
def api_gaps(run_id: str | None = None, kind: str | None = None, limit: int = 500) -> JSONResponse:
    if run_id and not run_exists(DB_PATH, run_id):
        raise HTTPException(status_code=404, detail=f"run not found: {run_id}")
    rows, used_run = list_gaps(DB_PATH, run_id=run_id, kind=kind, limit=limit)
    return JSONResponse({"rows": rows, "count": len(rows), "run_id": used_run})


@app.post("/api/v1/calculation-runs")
def api_create_calculation_run(payload: CalculationRunRequest | None = None) -> JSONResponse:
    """Recalculate commissions against a stored consolidation run.

    Consolidation is deterministic, so the entities are rebuilt from the
    snapshot rather than read back from storage.
    """
    payload = payload or CalculationRunRequest()
    run_id = payload.run_id or latest_run_id(DB_PATH)
    if run_id is None or not run_exists(DB_PATH, run_id):
        raise HTTPException(status_code=404, detail="consolidation run not found")
    _, snapshot = _load(payload.data_dir)
    result = _consolidate(snapshot)
    return JSONResponse({"ok": True, "run_id": run_id, **_calculate(run_id, snapshot, result)})


@app.get("/api/v1/traceability")
def api_traceability(
    status: str | None = None, calc_run_id: str | None = None, limit: int = 500
) -> JSONResponse:
    if status and status not in TRACE_STATUSES:
        raise HTTPException(status_code=400, detail="invalid status filter")
    rows, used_run = list_traceability(DB_PATH, calc_run_id=calc_run_id, status=status, limit=limit)
    return JSONResponse({"rows": rows, "count": len(rows), "calc_run_id": used_run})


@app.get("/api/v1/reports/coverage.pdf")
def api_coverage_report(run_id: str | None = None):
    run_id = run_id or latest_run_id(DB_PATH)
    stats = get_run_stats(DB_PATH, run_id) if run_id else None
    if stats is None:
        raise HTTPException(status_code=404, detail="consolidation run not found")
    gaps, _ = list_gaps(DB_PATH, run_id=run_id, limit=10_000)
    buf = io.BytesIO()
    render_coverage_pdf(buf, run_id, stats, gaps)
    return Response(
        content=buf.getvalue(),
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="coverage-{run_id}.pdf"'},
    )


@app.on_event("startup")
def on_startup() -> None:
    configure_logging(SETTINGS.log_level, SETTINGS.log_path)
    init_db(DB_PATH)
