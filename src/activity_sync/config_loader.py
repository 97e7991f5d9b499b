"""Load, validate, and hot-reload the sync engine configuration.

The config lives in ``sync_config.yaml`` alongside this module.  At startup
it is loaded once and cached.  Call ``reload_sync_config()`` to re-read from
disk after an operator edit, no restart required.

Usage::

    from src.activity_sync.config_loader import get_sync_config

    config = get_sync_config()
    spacing = config.gateway.min_interval_s    # 3.0
    zero_ttl = config.cache.zero_ttl_s         # 10.0
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

logger = logging.getLogger("leaderboard.activity_sync.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "sync_config.yaml"


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class BackoffConfig:
    """What the gateway does after an HTTP 429."""

    max_attempts: int
    delays_ms: list[int]


@dataclass
class GatewayConfig:
    """Upstream admission control settings."""

    min_interval_ms: int
    max_concurrent: int
    request_timeout_s: float
    backoff: BackoffConfig
    fallback_max_age_s: float
    page_size: int
    max_pages: int

    @property
    def min_interval_s(self) -> float:
        return self.min_interval_ms / 1000.0


@dataclass
class CacheConfig:
    """Read memoization TTLs for ranged metric reads."""

    zero_ttl_s: float
    nonzero_ttl_s: float


@dataclass
class BackfillConfig:
    """Historical backfill settings."""

    enabled: bool
    lookback_days: int
    inter_day_delay_ms: int

    @property
    def inter_day_delay_s(self) -> float:
        return self.inter_day_delay_ms / 1000.0


@dataclass
class SchedulerConfig:
    """Recurring pass + backfill settings."""

    recurring_interval_s: float
    metric_refresh_interval_s: float
    backfill: BackfillConfig


@dataclass
class RatesConfig:
    """Derived productivity rate settings."""

    min_measured_seconds: int


@dataclass
class SyncConfig:
    """Complete, validated sync configuration.

    This is the single in-memory representation of sync_config.yaml.
    The gateway, metric cache, and scheduler all read from this object.

    Attributes:
        version:   Config schema version string.
        gateway:   Upstream admission control and backoff.
        cache:     Read memoization TTLs.
        scheduler: Recurring pass and historical backfill.
        rates:     Deals-per-hour thresholds.
        timezone:  IANA name of the reference timezone for calendar days.
    """

    version: str
    gateway: GatewayConfig
    cache: CacheConfig
    scheduler: SchedulerConfig
    rates: RatesConfig
    timezone: str
    _raw: dict = field(default_factory=dict, repr=False)

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when sync_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Sync config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _validate_and_build(raw: dict) -> SyncConfig:
    """Validate the raw YAML dict and construct a SyncConfig.

    Missing keys fall back to the production defaults; present keys must be
    well-formed.  Every problem is collected before raising so an operator
    sees the whole list at once.

    Raises:
        ConfigValidationError: If any value is invalid.
    """
    errors: list[str] = []

    def _number(section: dict, key: str, default: float, path: str, minimum: float = 0) -> float:
        value = section.get(key, default)
        try:
            number = float(value)
        except (TypeError, ValueError):
            errors.append(f"{path}.{key} must be a number, got {value!r}")
            return default
        if number < minimum:
            errors.append(f"{path}.{key} = {number} must be >= {minimum}")
        return number

    version = str(raw.get("version", "1.0"))

    # ── Gateway ──
    gw_raw = raw.get("gateway", {}) or {}
    bo_raw = gw_raw.get("backoff", {}) or {}
    delays_raw = bo_raw.get("delays_ms", [10000])
    delays: list[int] = []
    if not isinstance(delays_raw, list) or not delays_raw:
        errors.append("gateway.backoff.delays_ms must be a non-empty list")
    else:
        for d in delays_raw:
            try:
                delays.append(int(d))
            except (TypeError, ValueError):
                errors.append(f"gateway.backoff.delays_ms entry {d!r} is not an integer")
    backoff = BackoffConfig(
        max_attempts=int(_number(bo_raw, "max_attempts", 1, "gateway.backoff", minimum=1)),
        delays_ms=delays or [10000],
    )
    gateway = GatewayConfig(
        min_interval_ms=int(_number(gw_raw, "min_interval_ms", 3000, "gateway")),
        max_concurrent=int(_number(gw_raw, "max_concurrent", 2, "gateway", minimum=1)),
        request_timeout_s=_number(gw_raw, "request_timeout_s", 30, "gateway", minimum=1),
        backoff=backoff,
        fallback_max_age_s=_number(gw_raw, "fallback_max_age_s", 300, "gateway"),
        page_size=int(_number(gw_raw, "page_size", 1000, "gateway", minimum=1)),
        max_pages=int(_number(gw_raw, "max_pages", 10, "gateway", minimum=1)),
    )

    # ── Cache ──
    c_raw = raw.get("cache", {}) or {}
    cache = CacheConfig(
        zero_ttl_s=_number(c_raw, "zero_ttl_s", 10, "cache"),
        nonzero_ttl_s=_number(c_raw, "nonzero_ttl_s", 120, "cache"),
    )
    if cache.zero_ttl_s > cache.nonzero_ttl_s:
        logger.warning(
            "cache.zero_ttl_s (%.0fs) exceeds cache.nonzero_ttl_s (%.0fs); "
            "zero readings will outlive real ones",
            cache.zero_ttl_s,
            cache.nonzero_ttl_s,
        )

    # ── Scheduler ──
    s_raw = raw.get("scheduler", {}) or {}
    bf_raw = s_raw.get("backfill", {}) or {}
    scheduler = SchedulerConfig(
        recurring_interval_s=_number(s_raw, "recurring_interval_s", 15, "scheduler", minimum=1),
        metric_refresh_interval_s=_number(
            s_raw, "metric_refresh_interval_s", 120, "scheduler", minimum=0
        ),
        backfill=BackfillConfig(
            enabled=bool(bf_raw.get("enabled", True)),
            lookback_days=int(_number(bf_raw, "lookback_days", 30, "scheduler.backfill")),
            inter_day_delay_ms=int(_number(bf_raw, "inter_day_delay_ms", 2000, "scheduler.backfill")),
        ),
    )

    # ── Rates ──
    r_raw = raw.get("rates", {}) or {}
    rates = RatesConfig(
        min_measured_seconds=int(_number(r_raw, "min_measured_seconds", 300, "rates")),
    )

    # ── Calendar ──
    cal_raw = raw.get("calendar", {}) or {}
    timezone = str(cal_raw.get("timezone", "UTC"))
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        errors.append(f"calendar.timezone {timezone!r} is not a known IANA timezone")

    if errors:
        raise ConfigValidationError(
            f"sync_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return SyncConfig(
        version=version,
        gateway=gateway,
        cache=cache,
        scheduler=scheduler,
        rates=rates,
        timezone=timezone,
        _raw=raw,
    )


def load_sync_config(path: Path | None = None) -> SyncConfig:
    """Load and validate the sync config from disk.

    Args:
        path: Override path to YAML. Uses the bundled sync_config.yaml by default.

    Returns:
        Validated SyncConfig instance.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded sync config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: SyncConfig | None = None
_config_lock = threading.Lock()


def get_sync_config() -> SyncConfig:
    """Return the global SyncConfig singleton, loading it on first call."""
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_sync_config()
    return _config


def reload_sync_config(path: Path | None = None) -> SyncConfig:
    """Reload the sync config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_sync_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded sync config: %s → %s", old_version, new_config.version)
    return new_config
