"""Engine settings: YAML profile plus environment overrides."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml

BASE_DIR = Path(__file__).resolve().parent.parent

_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")


def _expand_str(value: str) -> str:
    def replacer(match: re.Match[str]) -> str:
        token = match.group(1)
        if ":-" in token:
            key, default = token.split(":-", 1)
            actual = os.getenv(key, "")
            return actual if actual.strip() else default
        actual = os.getenv(token, "")
        if not actual.strip():
            raise ValueError(f"missing environment variable: {token}")
        return actual

    return _VAR_PATTERN.sub(replacer, value)


def _expand(value: Any) -> Any:
    if isinstance(value, str):
        return _expand_str(value)
    if isinstance(value, list):
        return [_expand(v) for v in value]
    if isinstance(value, dict):
        return {k: _expand(v) for k, v in value.items()}
    return value


@dataclass(frozen=True)
class EngineSettings:
    data_dir: Path = BASE_DIR / "data"
    db_path: Path = BASE_DIR / "data/engine.db"
    active_statuses: tuple[str, ...] = ("A", "ACTIVE")
    apply_split_distribution: bool = True
    # Split totals must be a positive multiple of this to count as stacked 100% splits.
    split_total_unit: float = 100.0
    log_level: str = "INFO"
    log_path: Path | None = None
    extra: dict[str, Any] = field(default_factory=dict)


def _coerce(data: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key in ("data_dir", "db_path", "log_path"):
        if data.get(key):
            out[key] = Path(data[key])
    if "active_statuses" in data:
        out["active_statuses"] = tuple(str(s).strip().upper() for s in data["active_statuses"])
    if "apply_split_distribution" in data:
        flag = data["apply_split_distribution"]
        if isinstance(flag, str):
            flag = flag.lower() in {"1", "true", "yes"}
        out["apply_split_distribution"] = bool(flag)
    if "split_total_unit" in data:
        out["split_total_unit"] = float(data["split_total_unit"])
    if data.get("log_level"):
        out["log_level"] = str(data["log_level"]).upper()
    return out


def load_settings(path: Path | None = None) -> EngineSettings:
    settings = EngineSettings()
    if path is not None:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"settings file must hold a mapping: {path}")
        engine = _expand(raw.get("engine", raw))
        known = _coerce(engine)
        extra = {k: v for k, v in engine.items() if k not in EngineSettings.__dataclass_fields__}
        settings = replace(settings, **known, extra=extra)

    env: dict[str, Any] = {}
    if os.getenv("COMMISSION_DATA_DIR"):
        env["data_dir"] = os.environ["COMMISSION_DATA_DIR"]
    if os.getenv("COMMISSION_DB_PATH"):
        env["db_path"] = os.environ["COMMISSION_DB_PATH"]
    if os.getenv("COMMISSION_LOG_LEVEL"):
        env["log_level"] = os.environ["COMMISSION_LOG_LEVEL"]
    if env:
        settings = replace(settings, **_coerce(env))
    return settings
