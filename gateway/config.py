"""Startup configuration for the gateway.

Settings are resolved once, in increasing precedence: built-in defaults, an
optional JSON config file (validated against `configs/schemas/gateway.schema.json`),
then the process environment. Credentials are read from the environment only.
The resulting `GatewaySettings` is immutable and is injected into the registry,
quota tracker and dispatcher; nothing re-reads the environment per request.
"""
from __future__ import annotations
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .schemas import SchemaValidator

REPO_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_CONFIG_PATH = REPO_ROOT / "configs" / "gateway.json"

DEFAULT_TEXT_CHAIN = ("openai", "groq", "gemini", "ollama")
DEFAULT_IMAGE_CHAIN = ("openai-image", "gemini-image", "sd-webui")

DEFAULT_TIER_LIMITS: Dict[str, Optional[int]] = {
    "free": 10,
    "silver": 30,
    "gold": 100,
    "admin": None,
}

DEFAULT_MODELS: Dict[str, str] = {
    "openai": "gpt-4o-mini",
    "groq": "llama-3.1-8b-instant",
    "gemini": "gemini-2.0-flash",
    "ollama": "llama3.2:latest",
    "openai-image": "dall-e-3",
    "gemini-image": "gemini-2.0-flash-exp",
}

MODEL_ENV_VARS = {
    "openai": "OPENAI_MODEL",
    "groq": "GROQ_MODEL",
    "gemini": "GEMINI_TEXT_MODEL",
    "ollama": "OLLAMA_MODEL",
    "openai-image": "OPENAI_IMAGE_MODEL",
    "gemini-image": "GEMINI_MODEL",
}

UNLIMITED_TOKENS = {"none", "null", "unlimited", "-1"}

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class ConfigError(Exception):
    """Invalid startup configuration."""


@dataclass(frozen=True)
class GatewaySettings:
    openai_api_key: Optional[str] = None
    groq_api_key: Optional[str] = None
    google_api_key: Optional[str] = None
    ollama_host: Optional[str] = None
    sd_webui_url: Optional[str] = None
    models: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_MODELS))
    text_chain: Tuple[str, ...] = DEFAULT_TEXT_CHAIN
    image_chain: Tuple[str, ...] = DEFAULT_IMAGE_CHAIN
    provider_timeout_s: float = 60.0
    fallback_backoff_s: float = 0.0
    tier_limits: Dict[str, Optional[int]] = field(default_factory=lambda: dict(DEFAULT_TIER_LIMITS))
    quota_timezone: str = "UTC"
    system_prompt: str = ""
    image_style_suffix: str = ""
    translate_image_prompts: bool = False
    blob_dir: Optional[str] = None
    blob_base_url: str = "/generated"
    blob_max_age_s: Optional[int] = None
    blob_max_count: Optional[int] = None
    trust_subject_headers: bool = False
    log_level: str = "INFO"


def load_env_file(path: Path | None = None) -> None:
    """Load KEY=VALUE lines from a `.env` file without overriding the environment."""
    env_path = Path(path) if path else REPO_ROOT / ".env"
    if not env_path.exists():
        return
    for line in env_path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        k, v = line.split("=", 1)
        k = k.strip()
        v = v.strip().strip('"').strip("'")
        if k and v and k not in os.environ:
            os.environ[k] = v


def load_config_file(path: Path) -> Dict[str, Any]:
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigError(f"{path}: invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top-level value must be an object")
    errors = SchemaValidator().validate("gateway", data)
    if errors:
        raise ConfigError(f"{path}: " + "; ".join(errors))
    return data


def _split(value: str) -> Tuple[str, ...]:
    return tuple(p.strip() for p in value.split(",") if p.strip())


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{key} must be a number, got {raw!r}")


def _limit(env: Mapping[str, str], key: str, default: Optional[int]) -> Optional[int]:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    if raw.strip().lower() in UNLIMITED_TOKENS:
        return None
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be an integer or 'unlimited', got {raw!r}")
    if value < 0:
        raise ConfigError(f"{key} must not be negative")
    return value


def _bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def load_settings(env: Mapping[str, str] | None = None, config_path: Path | str | None = None) -> GatewaySettings:
    env = os.environ if env is None else env
    if config_path is None and env.get("GATEWAY_CONFIG"):
        config_path = env["GATEWAY_CONFIG"]
    if config_path is not None:
        cfg = load_config_file(Path(config_path))
    elif DEFAULT_CONFIG_PATH.exists():
        cfg = load_config_file(DEFAULT_CONFIG_PATH)
    else:
        cfg = {}

    providers = cfg.get("providers", {})
    text_chain = tuple(providers.get("text", DEFAULT_TEXT_CHAIN))
    image_chain = tuple(providers.get("image", DEFAULT_IMAGE_CHAIN))
    if env.get("TEXT_PROVIDERS"):
        text_chain = _split(env["TEXT_PROVIDERS"])
    if env.get("IMAGE_PROVIDERS"):
        image_chain = _split(env["IMAGE_PROVIDERS"])

    models = dict(DEFAULT_MODELS)
    models.update(cfg.get("models", {}))
    for name, var in MODEL_ENV_VARS.items():
        if env.get(var):
            models[name] = env[var]

    tier_limits = dict(DEFAULT_TIER_LIMITS)
    tier_limits.update(cfg.get("tiers", {}))
    for tier in list(tier_limits):
        tier_limits[tier] = _limit(env, f"TIER_LIMIT_{tier.upper()}", tier_limits[tier])

    timezone = env.get("QUOTA_TIMEZONE") or cfg.get("quota", {}).get("timezone", "UTC")
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        raise ConfigError(f"unknown QUOTA_TIMEZONE {timezone!r}")

    timeout_s = _float(env, "PROVIDER_TIMEOUT_S", float(cfg.get("timeout_s", 60.0)))
    if timeout_s <= 0:
        raise ConfigError("PROVIDER_TIMEOUT_S must be positive")
    backoff_s = _float(env, "FALLBACK_BACKOFF_S", float(cfg.get("fallback", {}).get("backoff_s", 0.0)))
    if backoff_s < 0:
        raise ConfigError("FALLBACK_BACKOFF_S must not be negative")

    image_cfg = cfg.get("image", {})
    blob_cfg = cfg.get("blob_store", {})

    return GatewaySettings(
        openai_api_key=env.get("OPENAI_API_KEY") or None,
        groq_api_key=env.get("GROQ_API_KEY") or None,
        google_api_key=env.get("GOOGLE_API_KEY") or env.get("GEMINI_API_KEY") or None,
        ollama_host=env.get("OLLAMA_HOST") or None,
        sd_webui_url=env.get("SD_WEBUI_URL") or None,
        models=models,
        text_chain=text_chain,
        image_chain=image_chain,
        provider_timeout_s=timeout_s,
        fallback_backoff_s=backoff_s,
        tier_limits=tier_limits,
        quota_timezone=timezone,
        system_prompt=env.get("SYSTEM_PROMPT") or cfg.get("system_prompt", ""),
        image_style_suffix=env.get("IMAGE_STYLE_SUFFIX") or image_cfg.get("style_suffix", ""),
        translate_image_prompts=_bool(env, "TRANSLATE_IMAGE_PROMPTS", image_cfg.get("translate_prompts", False)),
        blob_dir=env.get("BLOB_DIR") or blob_cfg.get("dir"),
        blob_base_url=env.get("BLOB_BASE_URL") or blob_cfg.get("base_url", "/generated"),
        blob_max_age_s=_limit(env, "BLOB_MAX_AGE_S", blob_cfg.get("max_age_s")),
        blob_max_count=_limit(env, "BLOB_MAX_COUNT", blob_cfg.get("max_count")),
        trust_subject_headers=_bool(env, "TRUST_SUBJECT_HEADERS", False),
        log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
