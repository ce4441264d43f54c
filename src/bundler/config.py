import os
import json
import logging
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import bundler.constants as C
from bundler.constants import FeeLevel, OrderingMode, StageName, SubmissionMode, UnitKind
from bundler.models import Stage

log = logging.getLogger("bundler.config")

pkg_root = Path(__file__).parent
config_file = pkg_root / "config.toml"

# env var -> (section, key)
ENV_OVERRIDES = {
    "RPC_URL": ("ledger", "rpc_url"),
    "MAX_CALLS_PER_SECOND": ("ledger", "max_calls_per_second"),
    "RELAY_URLS": ("relay", "urls"),
    "BUNDLER_INVENTORY": ("inventory", "path"),
    "BUNDLER_SWAP_AMOUNTS": ("allocation", "amounts"),
    "STAGE1_PERCENTAGE": ("stages", "stage1_percentage"),
    "STAGE2_PERCENTAGE": ("stages", "stage2_percentage"),
    "STAGE1_THRESHOLD": ("stages", "stage1_threshold"),
    "STAGE2_THRESHOLD": ("stages", "stage2_threshold"),
    "STAGE3_THRESHOLD": ("stages", "stage3_threshold"),
    "SUBMISSION_MODE": ("launch", "mode"),
    "FUNDING_SEED": ("funding", "seed"),
}

# Standalone rippled genesis account
GENESIS_SEED = "snoPBrXtMeMyMHUVTgbuqAfg1SUTb"


def deep_update(base: dict, override: Mapping) -> dict:
    """Recursively merge override dict into base dict."""
    for k, v in override.items():
        if isinstance(v, Mapping) and isinstance(base.get(k), dict):
            deep_update(base[k], v)
        else:
            base[k] = v
    return base


def _split_list(raw: str) -> list[str]:
    raw = raw.strip()
    if raw.startswith("["):
        return [str(x) for x in json.loads(raw)]
    return [p.strip() for p in raw.split(",") if p.strip()]


def load_config(override_path: str | Path | None = None, env: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Package defaults <- override TOML file <- environment."""
    env = os.environ if env is None else env
    conf = tomllib.loads(config_file.read_text())

    override_path = override_path or env.get("BUNDLER_CONFIG")
    if override_path:
        p = Path(override_path)
        if p.is_file():
            deep_update(conf, tomllib.loads(p.read_text()))
            log.debug("Merged config overrides from %s", p)
        else:
            log.warning("Config override %s not found, using package defaults", p)

    for var, (section, key) in ENV_OVERRIDES.items():
        raw = env.get(var)
        if raw is None or raw == "":
            continue
        if var in ("RELAY_URLS", "BUNDLER_SWAP_AMOUNTS"):
            try:
                value: Any = _split_list(raw)
            except json.JSONDecodeError:
                log.warning("Ignoring malformed %s=%r", var, raw)
                continue
        else:
            value = raw
        conf.setdefault(section, {})[key] = value

    if not conf.get("funding", {}).get("seed"):
        conf.setdefault("funding", {})["seed"] = GENESIS_SEED
    return conf


def _number(raw: Any, default: float, name: str) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        log.warning("Invalid %s=%r, falling back to %s", name, raw, default)
        return default
    if value < 0 or value != value:  # NaN
        log.warning("Invalid %s=%r, falling back to %s", name, raw, default)
        return default
    return value


def allocation_amounts(conf: Mapping[str, Any]) -> list[float | None]:
    """Configured positional amounts. Unparseable entries become None (use the default)."""
    out: list[float | None] = []
    for raw in conf.get("allocation", {}).get("amounts", []) or []:
        try:
            out.append(float(raw))
        except (TypeError, ValueError):
            log.warning("Ignoring allocation amount %r", raw)
            out.append(None)
    return out


@dataclass(frozen=True, slots=True)
class StageSettings:
    stage1_percentage: float = C.DEFAULT_STAGE_PERCENTAGES[StageName.STAGE1]
    stage2_percentage: float = C.DEFAULT_STAGE_PERCENTAGES[StageName.STAGE2]
    thresholds: dict[StageName, float] = field(default_factory=lambda: dict(C.DEFAULT_STAGE_THRESHOLDS))
    wait_for_threshold: bool = False
    poll_interval: float = 2.0
    threshold_timeout: float = 300.0

    @property
    def stage3_percentage(self) -> float:
        return 100.0 - self.stage1_percentage - self.stage2_percentage

    def stage(self, name: StageName | str) -> Stage:
        name = StageName(name)
        match name:
            case StageName.STAGE1:
                pct = self.stage1_percentage
            case StageName.STAGE2:
                pct = self.stage2_percentage
            case StageName.STAGE3:
                pct = self.stage3_percentage
            case StageName.ALL:
                return Stage(name, 100.0, self.thresholds[StageName.STAGE3])
        return Stage(name, pct, self.thresholds[name])

    @classmethod
    def from_cfg(cls, conf: Mapping[str, Any]) -> "StageSettings":
        s = conf.get("stages", {})
        d1 = C.DEFAULT_STAGE_PERCENTAGES[StageName.STAGE1]
        d2 = C.DEFAULT_STAGE_PERCENTAGES[StageName.STAGE2]
        p1 = _number(s.get("stage1_percentage", d1), d1, "stage1_percentage")
        p2 = _number(s.get("stage2_percentage", d2), d2, "stage2_percentage")
        if p1 + p2 > 100:
            log.warning("stage1 + stage2 percentages exceed 100 (%s + %s), using %s/%s", p1, p2, d1, d2)
            p1, p2 = d1, d2

        thresholds = {}
        for name in (StageName.STAGE1, StageName.STAGE2, StageName.STAGE3):
            default = C.DEFAULT_STAGE_THRESHOLDS[name]
            thresholds[name] = _number(s.get(f"{name}_threshold", default), default, f"{name}_threshold")

        return cls(
            stage1_percentage=p1,
            stage2_percentage=p2,
            thresholds=thresholds,
            wait_for_threshold=bool(s.get("wait_for_threshold", False)),
            poll_interval=_number(s.get("threshold_poll_interval", 2.0), 2.0, "threshold_poll_interval"),
            threshold_timeout=_number(s.get("threshold_timeout", 300.0), 300.0, "threshold_timeout"),
        )


@dataclass(frozen=True, slots=True)
class WorkerSettings:
    max_attempts: int = C.MAX_ATTEMPTS
    retry_delay: float = C.RETRY_DELAY
    designated_delay: float = C.DESIGNATED_SUBMIT_DELAY
    ordering: OrderingMode = OrderingMode.BARRIER
    fee_level: FeeLevel = FeeLevel.MEDIUM

    @classmethod
    def from_cfg(cls, conf: Mapping[str, Any]) -> "WorkerSettings":
        w = conf.get("worker", {})
        max_attempts = int(_number(w.get("max_attempts", C.MAX_ATTEMPTS), C.MAX_ATTEMPTS, "max_attempts"))
        try:
            ordering = OrderingMode(w.get("ordering", OrderingMode.BARRIER))
        except ValueError:
            log.warning("Unknown ordering mode %r, using %s", w.get("ordering"), OrderingMode.BARRIER)
            ordering = OrderingMode.BARRIER
        try:
            fee_level = FeeLevel(w.get("fee_level", FeeLevel.MEDIUM))
        except ValueError:
            log.warning("Unknown fee level %r, using %s", w.get("fee_level"), FeeLevel.MEDIUM)
            fee_level = FeeLevel.MEDIUM
        return cls(
            max_attempts=max(1, max_attempts),
            retry_delay=_number(w.get("retry_delay", C.RETRY_DELAY), C.RETRY_DELAY, "retry_delay"),
            designated_delay=_number(
                w.get("designated_delay", C.DESIGNATED_SUBMIT_DELAY), C.DESIGNATED_SUBMIT_DELAY, "designated_delay"
            ),
            ordering=ordering,
            fee_level=fee_level,
        )


@dataclass(frozen=True, slots=True)
class BudgetPair:
    limit: int  # max total fee, drops
    price: int  # drops per fee-bearing slot


DEFAULT_BUDGETS: dict[UnitKind, BudgetPair] = {
    UnitKind.CREATION: BudgetPair(limit=5_000_000, price=2_000_000),
    UnitKind.DESIGNATED: BudgetPair(limit=500_000, price=5_000),
    UnitKind.ORDINARY: BudgetPair(limit=500_000, price=5_000),
}


@dataclass(frozen=True, slots=True)
class BudgetSettings:
    budgets: dict[UnitKind, BudgetPair] = field(default_factory=lambda: dict(DEFAULT_BUDGETS))

    def for_kind(self, kind: UnitKind) -> BudgetPair:
        return self.budgets[kind]

    @classmethod
    def from_cfg(cls, conf: Mapping[str, Any]) -> "BudgetSettings":
        section = conf.get("budget", {})
        budgets = {}
        for kind, default in DEFAULT_BUDGETS.items():
            b = section.get(str(kind), {})
            budgets[kind] = BudgetPair(
                limit=int(_number(b.get("limit", default.limit), default.limit, f"budget.{kind}.limit")),
                price=int(_number(b.get("price", default.price), default.price, f"budget.{kind}.price")),
            )
        return cls(budgets)


def submission_mode(conf: Mapping[str, Any]) -> SubmissionMode:
    raw = conf.get("launch", {}).get("mode", SubmissionMode.RELAY)
    try:
        return SubmissionMode(str(raw).lower())
    except ValueError:
        log.warning("Unknown submission mode %r, using %s", raw, SubmissionMode.RELAY)
        return SubmissionMode.RELAY


cfg = load_config()
