"""
OTP Pipeline — Config Loader

Three-tier configuration loading:
  1. Base YAML file (pipeline_config.yaml, or OTP_CONFIG_PATH)
  2. Per-environment overlay files (config/{OTP_ENV}.yaml merged over base)
  3. Environment variable overrides (OTP_ prefixed, plus the legacy
     JASAOTP_* / TREASURY_* / runtime names)

Usage:
    from core.config import load_config, Settings

    cfg = load_config()
    settings = Settings.from_config(cfg)
    settings.runtime.expire_minutes   # 10 unless overridden

Environment variables:
    OTP_ENV            — active profile (dev, prod, ...)
    OTP_CONFIG_DIR     — directory for overlay files (default: config/)
    OTP_CONFIG_PATH    — base file (default: pipeline_config.yaml)
    OTP_<SECTION>_<KEY> — flat overrides (e.g., OTP_RUNTIME_SLOW_MO=50)
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("otp_pipeline.config")

DEFAULT_CONFIG_PATH = "pipeline_config.yaml"

# Legacy variable names → dotted config path
LEGACY_ENV_VARS: dict[str, str] = {
    "JASAOTP_API_KEY": "provider.api_key",
    "JASAOTP_NEGARA": "provider.country",
    "JASAOTP_LAYANAN": "provider.service",
    "JASAOTP_OPERATOR": "provider.operator",
    "TREASURY_LOGIN_URL": "target.login_url",
    "TREASURY_REGISTER_URL": "target.register_url",
    "TREASURY_PASSWORD": "target.password",
    "EXPIRE_MINUTES": "runtime.expire_minutes",
    "HEADLESS": "runtime.headless",
    "SLOW_MO": "runtime.slow_mo",
}


# ═══════════════════════════════════════════════════════════════════
# Deep Merge
# ═══════════════════════════════════════════════════════════════════

def deep_merge(base: dict, overlay: dict) -> dict:
    """
    Deep-merge overlay into base. Overlay values win.
    Lists are replaced (not appended). Dicts are recursed.
    """
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _set_nested(d: dict, keys: list[str], value: Any):
    """Set a nested dict value from a list of keys."""
    for key in keys[:-1]:
        d = d.setdefault(key, {})
    d[keys[-1]] = value


def _parse_scalar(value: str) -> Any:
    """Parse an env var string as YAML (numbers, booleans), else keep it."""
    try:
        return yaml.safe_load(value)
    except yaml.YAMLError:
        return value


# ═══════════════════════════════════════════════════════════════════
# Tier 2: Overlay Files
# ═══════════════════════════════════════════════════════════════════

def _load_overlay_file(
    base_path: str,
    env: str = "",
    config_dir: str = "",
) -> dict[str, Any]:
    """
    Load per-environment overlay file.
    Looks for config/{env}.yaml or {config_dir}/{env}.yaml.
    Returns empty dict if not found.
    """
    env = env or os.environ.get("OTP_ENV", "")
    if not env:
        return {}

    config_dir = config_dir or os.environ.get("OTP_CONFIG_DIR", "config")

    candidates = [
        Path(config_dir) / f"{env}.yaml",
        Path(config_dir) / f"{env}.yml",
        Path(os.path.dirname(base_path)) / "config" / f"{env}.yaml",
    ]

    for path in candidates:
        if path.exists():
            try:
                with open(path) as f:
                    overlay = yaml.safe_load(f) or {}
                logger.info("Loaded config overlay: %s (%d keys)", path, len(overlay))
                return overlay
            except (OSError, yaml.YAMLError) as e:
                logger.warning("Failed to load overlay %s: %s", path, e)

    logger.debug("No config overlay found for env=%s", env)
    return {}


# ═══════════════════════════════════════════════════════════════════
# Tier 3: Environment Variable Overrides
# ═══════════════════════════════════════════════════════════════════

def _load_env_overrides(prefix: str = "OTP_") -> dict[str, Any]:
    """
    Load environment variables as config overrides.

    Naming convention:
      OTP_SECTION_KEY=value → {"section": {"key": value}}
      OTP_RUNTIME_EXPIRE_MINUTES=5 → {"runtime": {"expire_minutes": 5}}

    The first segment after the prefix is the section; the rest, joined
    with underscores, is the key. Legacy names in LEGACY_ENV_VARS are
    applied first so OTP_* wins when both are set.
    """
    excluded = {"OTP_ENV", "OTP_CONFIG_DIR", "OTP_CONFIG_PATH"}
    overrides: dict[str, Any] = {}

    for name, dotted in LEGACY_ENV_VARS.items():
        if name in os.environ:
            # Raw strings; Settings.from_config does the type coercion
            _set_nested(overrides, dotted.split("."), os.environ[name])

    for key, value in os.environ.items():
        if not key.startswith(prefix) or key in excluded:
            continue
        parts = key[len(prefix):].lower().split("_")
        if len(parts) < 2:
            continue
        _set_nested(overrides, [parts[0], "_".join(parts[1:])], _parse_scalar(value))

    if overrides:
        logger.debug("Loaded %d env var override sections", len(overrides))
    return overrides


# ═══════════════════════════════════════════════════════════════════
# Main Loader
# ═══════════════════════════════════════════════════════════════════

def load_config(
    base_path: str = "",
    env: str = "",
    config_dir: str = "",
    include_env_vars: bool = True,
) -> dict[str, Any]:
    """
    Load configuration with three-tier merging.

    Priority (highest wins):
      1. Environment variable overrides
      2. Per-environment overlay file (config/{env}.yaml)
      3. Base config file (pipeline_config.yaml)
    """
    base_path = base_path or os.environ.get("OTP_CONFIG_PATH", DEFAULT_CONFIG_PATH)

    config: dict[str, Any] = {}
    if os.path.exists(base_path):
        with open(base_path) as f:
            config = yaml.safe_load(f) or {}
        logger.debug("Loaded base config: %s", base_path)

    overlay = _load_overlay_file(base_path, env=env, config_dir=config_dir)
    if overlay:
        config = deep_merge(config, overlay)

    if include_env_vars:
        env_overrides = _load_env_overrides()
        if env_overrides:
            config = deep_merge(config, env_overrides)

    config["_active_env"] = env or os.environ.get("OTP_ENV", "default")
    config["_config_source"] = base_path
    return config


def get_config_value(
    path: str,
    config: dict[str, Any] | None = None,
    default: Any = None,
) -> Any:
    """
    Get a nested config value by dotted path.

    Example:
        get_config_value("runtime.expire_minutes", cfg, 10)
    """
    if config is None:
        config = load_config()

    current = config
    for key in path.split("."):
        if isinstance(current, dict) and key in current:
            current = current[key]
        else:
            return default
    return current


# ═══════════════════════════════════════════════════════════════════
# Typed Settings
# ═══════════════════════════════════════════════════════════════════

def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


@dataclass
class ProviderSettings:
    """Number rental service (JasaOTP)."""
    api_key: str = "REPLACE_ME"
    base_url: str = "https://api.jasaotp.id/v1"
    country: int = 6
    service: str = "bnt"
    operator: str = "any"
    timeout_seconds: float = 30.0


@dataclass
class TargetSettings:
    """Registration/login target."""
    login_url: str = "https://www.treasury.id/login"
    register_url: str = "https://web.treasury.id/register"
    password: str = "@Facebook20"


@dataclass
class RuntimeSettings:
    expire_minutes: int = 10
    headless: bool = True
    slow_mo: int = 0
    log_level: str = "INFO"


@dataclass
class StorageSettings:
    path: str = "logs.json"
    backup_dir: str = "."
    export_dir: str = "."


@dataclass
class PacingPolicy:
    """Fixed delays and round limits for every workflow (seconds)."""
    create_item_delay: float = 1.0
    send_otp_item_delay: float = 1.0
    check_otp_item_delay: float = 0.5
    check_retry_item_delay: float = 0.3
    check_retry_rounds: int = 5
    check_retry_interval: float = 20.0
    login_item_delay: float = 1.0
    login_retry_rounds: int = 2
    login_retry_delay: float = 5.0
    auto_after_create: float = 5.0
    auto_after_send: float = 10.0


@dataclass
class Settings:
    provider: ProviderSettings = field(default_factory=ProviderSettings)
    target: TargetSettings = field(default_factory=TargetSettings)
    runtime: RuntimeSettings = field(default_factory=RuntimeSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    pacing: PacingPolicy = field(default_factory=PacingPolicy)

    @property
    def expire_seconds(self) -> float:
        return self.runtime.expire_minutes * 60.0

    @classmethod
    def from_config(cls, cfg: dict[str, Any] | None = None) -> Settings:
        cfg = cfg or {}
        p = cfg.get("provider", {}) or {}
        t = cfg.get("target", {}) or {}
        r = cfg.get("runtime", {}) or {}
        s = cfg.get("storage", {}) or {}
        pc = cfg.get("pacing", {}) or {}

        dp, dt, dr, ds = ProviderSettings(), TargetSettings(), RuntimeSettings(), StorageSettings()
        pacing = PacingPolicy()
        for name in pacing.__dataclass_fields__:
            if name in pc:
                default = getattr(pacing, name)
                setattr(pacing, name, type(default)(pc[name]))

        return cls(
            provider=ProviderSettings(
                api_key=str(p.get("api_key", dp.api_key)),
                base_url=str(p.get("base_url", dp.base_url)).rstrip("/"),
                country=int(p.get("country", dp.country)),
                service=str(p.get("service", dp.service)),
                operator=str(p.get("operator", dp.operator)),
                timeout_seconds=float(p.get("timeout_seconds", dp.timeout_seconds)),
            ),
            target=TargetSettings(
                login_url=str(t.get("login_url", dt.login_url)),
                register_url=str(t.get("register_url", dt.register_url)),
                password=str(t.get("password", dt.password)),
            ),
            runtime=RuntimeSettings(
                expire_minutes=int(r.get("expire_minutes", dr.expire_minutes)),
                headless=_as_bool(r.get("headless", dr.headless)),
                slow_mo=int(r.get("slow_mo", dr.slow_mo)),
                log_level=str(r.get("log_level", dr.log_level)),
            ),
            storage=StorageSettings(
                path=str(s.get("path", ds.path)),
                backup_dir=str(s.get("backup_dir", ds.backup_dir)),
                export_dir=str(s.get("export_dir", ds.export_dir)),
            ),
            pacing=pacing,
        )


def load_settings(base_path: str = "", env: str = "") -> Settings:
    return Settings.from_config(load_config(base_path=base_path, env=env))
