# FILE: sdeit/config.py
from __future__ import annotations

import logging
import math
import os
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from .kv import canonical_kv_hash
from .schemas import SdeitError

_log = logging.getLogger(__name__)


class ConfigurationError(SdeitError):
    """Missing or invalid configuration; the engine must not start."""


# ---------------------------------------------------------------------------
# Env helpers
# ---------------------------------------------------------------------------


def _env_raw(name: str) -> Optional[str]:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return None
    return raw.strip()


def _env_bool(name: str, default: bool) -> bool:
    raw = _env_raw(name)
    if raw is None:
        return default
    return raw.lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    raw = _env_raw(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} is not a number: {raw!r}") from e


def _env_int(name: str, default: int) -> int:
    raw = _env_raw(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} is not an integer: {raw!r}") from e


def _env_str(name: str, default: Optional[str]) -> Optional[str]:
    raw = _env_raw(name)
    return default if raw is None else raw


def _load_yaml_mapping(path: str) -> Dict[str, Any]:
    """
    Load a simple top-level mapping from YAML.

    A missing path yields an empty mapping; an unreadable file or a
    non-mapping document is a configuration error.
    """
    if not path or not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            doc = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"failed to load YAML config from {path}: {e}") from e
    if doc is None:
        return {}
    if not isinstance(doc, dict):
        raise ConfigurationError(f"YAML config at {path} must be a mapping")
    return {str(k): v for k, v in doc.items()}


# ---------------------------------------------------------------------------
# Settings model
# ---------------------------------------------------------------------------


class Settings(BaseModel):
    # --- Identity ---------------------------------------------------------

    debug: bool = False
    version: str = "dev"
    app_name: str = "SDEIT exposure engine"
    # Indicates how this config reached the process (defaults/yaml/env).
    config_origin: str = "defaults"

    # --- Authority / identity ---------------------------------------------

    # Raw 32-byte Ed25519 key of the health authority, hex encoded.
    authority_public_key_hex: str = ""
    # This device's own anonymous identifier. A verified delta reporting
    # risk 0 for it clears a sticky test recommendation.
    own_peer_id: Optional[str] = None

    # --- Exposure model ---------------------------------------------------

    infection_risk_test_threshold: Optional[float] = None
    # A three second hug with an infected person: 6.2% chance of transmission.
    base_exposure_rate: float = 0.062
    # Distance 2m gives half the exposure of distance 1m.
    half_life_distance_meters: float = 1.0
    retention_horizon_days: int = 7
    # Allowance used until the first verified delta arrives.
    initial_daily_tlot_increase_allowance: float = 1.0

    # --- Scheduling (seconds) ---------------------------------------------

    scan_period_s: float = 3.0
    cleanup_period_s: float = 24 * 60 * 60.0
    fetch_period_s: float = 60 * 60.0

    # --- Observability ----------------------------------------------------

    log_level: str = "INFO"
    metrics_enable: bool = True
    prometheus_port: int = 8001
    prom_http_enable: bool = False

    model_config = ConfigDict(extra="forbid", frozen=True)

    @field_validator("infection_risk_test_threshold")
    @classmethod
    def _check_threshold(cls, v: Optional[float]) -> Optional[float]:
        if v is None:
            return v
        if not math.isfinite(v) or not (0.0 < v <= 1.0):
            raise ValueError("infection_risk_test_threshold must be in (0, 1]")
        return v

    @field_validator("base_exposure_rate")
    @classmethod
    def _check_rate(cls, v: float) -> float:
        if not math.isfinite(v) or not (0.0 <= v <= 1.0):
            raise ValueError("base_exposure_rate must be in [0, 1]")
        return v

    @field_validator("half_life_distance_meters", "scan_period_s", "cleanup_period_s", "fetch_period_s")
    @classmethod
    def _check_positive(cls, v: float) -> float:
        if not math.isfinite(v) or v <= 0.0:
            raise ValueError("must be a positive finite number")
        return v

    @field_validator("initial_daily_tlot_increase_allowance")
    @classmethod
    def _check_allowance(cls, v: float) -> float:
        if not math.isfinite(v) or v < 0.0:
            raise ValueError("allowance must be a non-negative finite number")
        return v

    @field_validator("retention_horizon_days")
    @classmethod
    def _check_horizon(cls, v: int) -> int:
        if v < 0:
            raise ValueError("retention_horizon_days must be >= 0")
        return v

    @field_validator("prometheus_port")
    @classmethod
    def _check_port(cls, v: int) -> int:
        return max(0, v)

    # ------------------------------------------------------------------ #
    # Derived helpers
    # ------------------------------------------------------------------ #

    def require_engine_ready(self) -> None:
        """
        Raise ConfigurationError unless the fields the engine cannot default
        (authority key, test threshold) are present.
        """
        missing = []
        if not self.authority_public_key_hex:
            missing.append("authority_public_key_hex")
        if self.infection_risk_test_threshold is None:
            missing.append("infection_risk_test_threshold")
        if missing:
            raise ConfigurationError(f"missing required settings: {', '.join(missing)}")

    def config_hash(self) -> str:
        """
        Stable hash of the current settings, safe to put in logs and metrics.
        """
        return canonical_kv_hash(self.model_dump(mode="json"), label=b"sdeit:v1:settings")


# ---------------------------------------------------------------------------
# Loading / merging
# ---------------------------------------------------------------------------

# env var -> (settings field, parser)
_ENV_FIELDS: Dict[str, tuple] = {
    "SDEIT_DEBUG": ("debug", _env_bool),
    "SDEIT_VERSION": ("version", _env_str),
    "SDEIT_AUTHORITY_PUBLIC_KEY": ("authority_public_key_hex", _env_str),
    "SDEIT_OWN_PEER_ID": ("own_peer_id", _env_str),
    "SDEIT_TEST_THRESHOLD": ("infection_risk_test_threshold", _env_float),
    "SDEIT_BASE_EXPOSURE_RATE": ("base_exposure_rate", _env_float),
    "SDEIT_HALF_LIFE_METERS": ("half_life_distance_meters", _env_float),
    "SDEIT_RETENTION_DAYS": ("retention_horizon_days", _env_int),
    "SDEIT_INITIAL_ALLOWANCE": ("initial_daily_tlot_increase_allowance", _env_float),
    "SDEIT_SCAN_PERIOD_S": ("scan_period_s", _env_float),
    "SDEIT_CLEANUP_PERIOD_S": ("cleanup_period_s", _env_float),
    "SDEIT_FETCH_PERIOD_S": ("fetch_period_s", _env_float),
    "SDEIT_LOG_LEVEL": ("log_level", _env_str),
    "SDEIT_METRICS_ENABLE": ("metrics_enable", _env_bool),
    "SDEIT_PROM_PORT": ("prometheus_port", _env_int),
    "SDEIT_PROM_HTTP_ENABLE": ("prom_http_enable", _env_bool),
}


def load_settings(**overrides: Any) -> Settings:
    """
    Load Settings from defaults, optional YAML, and environment variables.

    Priority (later wins):
      1. Settings defaults (in-code).
      2. YAML file pointed to by SDEIT_CONFIG_PATH.
      3. Environment variables (SDEIT_*).
      4. Explicit keyword overrides.

    Any invalid value raises ConfigurationError.
    """
    merged: Dict[str, Any] = Settings().model_dump()
    origin = "defaults"

    yaml_doc = _load_yaml_mapping(os.environ.get("SDEIT_CONFIG_PATH", "").strip())
    if yaml_doc:
        merged.update(yaml_doc)
        origin = "yaml"

    for env_name, (key, parser) in _ENV_FIELDS.items():
        if _env_raw(env_name) is None:
            continue
        merged[key] = parser(env_name, merged.get(key))
        origin = "env"

    if overrides:
        merged.update(overrides)
        origin = "override"

    merged["config_origin"] = origin
    try:
        settings = Settings(**merged)
    except ValidationError as e:
        raise ConfigurationError(f"invalid settings: {e}") from e
    _log.debug("settings loaded from %s (hash=%s)", origin, settings.config_hash()[:16])
    return settings
