"""Load, validate, and hot-reload the exporter tuning configuration.

The config lives in ``exporter_config.yaml`` alongside this module.  At
startup it is loaded once and cached.  Call ``reload_exporter_config()`` to
re-read from disk; components built afterwards pick up the new values.

Usage::

    from src.exporter.config_loader import get_exporter_config

    config = get_exporter_config()
    config.retry.max_attempts          # 4
    config.is_enabled("sleep")         # True
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from src.exporter.resources import RESOURCE_REGISTRY

logger = logging.getLogger("fitbit_exporter.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "exporter_config.yaml"


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class TokenConfig:
    """Credential refresh settings."""

    safety_margin_seconds: int


@dataclass
class RetryConfig:
    """Upstream retry policy settings."""

    max_attempts: int
    base_delay_ms: int
    max_delay_ms: int
    jitter: bool


@dataclass
class PollConfig:
    """Current-data polling settings."""

    lookback_days: int
    auth_failure_limit: int
    shutdown_grace_seconds: float


@dataclass
class BackfillConfig:
    """Historical backfill settings."""

    chunk_days: int
    rate_limit_ms: int


@dataclass
class ExpositionConfig:
    """Scrape rendering settings."""

    include_timestamps: bool


@dataclass
class ExporterConfig:
    """Complete, validated exporter configuration.

    Attributes:
        version:    Config schema version string.
        resources:  Enabled resource kinds, in fetch order.
        token:      Credential refresh settings.
        retry:      Upstream retry policy.
        poll:       Poll scheduler settings.
        backfill:   Backfill driver settings.
        exposition: Scrape rendering settings.
    """

    version: str
    resources: list[str]
    token: TokenConfig
    retry: RetryConfig
    poll: PollConfig
    backfill: BackfillConfig
    exposition: ExpositionConfig
    _raw: dict = field(default_factory=dict, repr=False)

    def is_enabled(self, resource: str) -> bool:
        return resource in self.resources

    @property
    def date_scoped_resources(self) -> list[str]:
        """Enabled resources that can be backfilled."""
        return [r for r in self.resources if RESOURCE_REGISTRY[r].date_scoped]


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when exporter_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Exporter config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _validate_and_build(raw: dict) -> ExporterConfig:
    """Validate the raw YAML dict and construct an ExporterConfig.

    Applies defaults for every optional field and collects all errors before
    raising, so one run reports every problem.

    Raises:
        ConfigValidationError: If any field is missing or invalid.
    """
    errors: list[str] = []

    def _int(section: dict, key: str, default: int, path: str, minimum: int = 0) -> int:
        value = section.get(key, default)
        try:
            result = int(value)
        except (TypeError, ValueError):
            errors.append(f"{path}.{key} must be an integer, got {value!r}")
            return default
        if result < minimum:
            errors.append(f"{path}.{key} = {result} must be >= {minimum}")
        return result

    version = str(raw.get("version", "1.0"))

    # ── Resources ──
    resources_raw = raw.get("resources", list(RESOURCE_REGISTRY))
    resources: list[str] = []
    if not isinstance(resources_raw, list) or not resources_raw:
        errors.append("'resources' must be a non-empty list of resource names")
    else:
        for name in resources_raw:
            if name not in RESOURCE_REGISTRY:
                errors.append(
                    f"resources: unknown resource '{name}' "
                    f"(available: {', '.join(RESOURCE_REGISTRY)})"
                )
            elif name in resources:
                errors.append(f"resources: '{name}' listed twice")
            else:
                resources.append(name)

    # ── Token ──
    token_raw = raw.get("token", {}) or {}
    token = TokenConfig(
        safety_margin_seconds=_int(token_raw, "safety_margin_seconds", 300, "token"),
    )

    # ── Retry ──
    retry_raw = raw.get("retry", {}) or {}
    retry = RetryConfig(
        max_attempts=_int(retry_raw, "max_attempts", 4, "retry", minimum=1),
        base_delay_ms=_int(retry_raw, "base_delay_ms", 1000, "retry"),
        max_delay_ms=_int(retry_raw, "max_delay_ms", 60000, "retry"),
        jitter=bool(retry_raw.get("jitter", True)),
    )
    if retry.max_delay_ms < retry.base_delay_ms:
        errors.append("retry.max_delay_ms must be >= retry.base_delay_ms")

    # ── Poll ──
    poll_raw = raw.get("poll", {}) or {}
    grace_raw = poll_raw.get("shutdown_grace_seconds", 10)
    try:
        grace = float(grace_raw)
    except (TypeError, ValueError):
        errors.append(f"poll.shutdown_grace_seconds must be a number, got {grace_raw!r}")
        grace = 10.0
    poll = PollConfig(
        lookback_days=_int(poll_raw, "lookback_days", 1, "poll"),
        auth_failure_limit=_int(poll_raw, "auth_failure_limit", 2, "poll", minimum=1),
        shutdown_grace_seconds=grace,
    )

    # ── Backfill ──
    bf_raw = raw.get("backfill", {}) or {}
    backfill = BackfillConfig(
        chunk_days=_int(bf_raw, "chunk_days", 30, "backfill", minimum=1),
        rate_limit_ms=_int(bf_raw, "rate_limit_ms", 500, "backfill"),
    )

    # ── Exposition ──
    ex_raw = raw.get("exposition", {}) or {}
    exposition = ExpositionConfig(
        include_timestamps=bool(ex_raw.get("include_timestamps", False)),
    )

    if errors:
        raise ConfigValidationError(
            f"exporter_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return ExporterConfig(
        version=version,
        resources=resources,
        token=token,
        retry=retry,
        poll=poll,
        backfill=backfill,
        exposition=exposition,
        _raw=raw,
    )


def load_exporter_config(path: Path | None = None) -> ExporterConfig:
    """Load and validate the exporter config from disk.

    Args:
        path: Override path to YAML. Uses the bundled exporter_config.yaml by default.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded exporter config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: ExporterConfig | None = None
_config_lock = threading.Lock()


def get_exporter_config(path: Path | None = None) -> ExporterConfig:
    """Return the global ExporterConfig singleton, loading it on first call.

    ``path`` only matters for the first call; later calls return the cache.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_exporter_config(path)
    return _config


def reload_exporter_config(path: Path | None = None) -> ExporterConfig:
    """Reload the config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error re-raised.
    """
    global _config
    new_config = load_exporter_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded exporter config: %s → %s", old_version, new_config.version)
    return new_config
