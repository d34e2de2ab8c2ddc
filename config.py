"""Runtime configuration helpers."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List

from services.auth import ApiKeyGrant
from services.plans import PlanTier, parse_plan_tier

BASE_DIR = Path(__file__).resolve().parent
LOGGER = logging.getLogger(__name__)

DEFAULT_SECRET = "dev-secret"
DEFAULT_APP_ENV = "production"
DEFAULT_BACKEND = "sqlite"
DEFAULT_LOG_LEVEL = "INFO"

_DEFAULT_DATABASE_URL = f"sqlite:///{BASE_DIR / 'usage.db'}"

VALID_APP_ENVS = {"production", "development"}
VALID_BACKENDS = {"sqlite", "memory"}
VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


@dataclass
class Config:
    secret_key: str = DEFAULT_SECRET
    app_env: str = DEFAULT_APP_ENV
    self_hosted: bool = False
    request_size_limit: int = 64 * 1024  # 64KB by default
    rate_limit_backend: str = DEFAULT_BACKEND
    database_url: str = field(default_factory=lambda: _DEFAULT_DATABASE_URL)
    log_level: str = DEFAULT_LOG_LEVEL
    api_keys: Dict[str, ApiKeyGrant] = field(default_factory=dict)


def _grant_from_parts(user_id: str, plan: str | None) -> ApiKeyGrant | None:
    user_id = user_id.strip()
    if not user_id:
        return None
    try:
        tier = parse_plan_tier(plan) if plan else PlanTier.FREE
    except ValueError:
        LOGGER.warning("Unknown plan '%s' for API key user %s; using free", plan, user_id)
        tier = PlanTier.FREE
    return ApiKeyGrant(user_id=user_id, plan=tier)


def _parse_json_grants(candidate: str) -> Dict[str, ApiKeyGrant]:
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError:
        LOGGER.warning("Invalid JSON provided for X_API_KEYS; ignoring value")
        return {}
    if not isinstance(parsed, dict):
        LOGGER.warning("X_API_KEYS JSON payload must be an object; got %s", type(parsed).__name__)
        return {}
    grants: Dict[str, ApiKeyGrant] = {}
    for key, entry in parsed.items():
        key = str(key).strip()
        if not key or not isinstance(entry, dict):
            continue
        grant = _grant_from_parts(str(entry.get("user_id") or ""), entry.get("plan"))
        if grant:
            grants[key] = grant
    return grants


def _parse_listed_grants(candidate: str) -> Dict[str, ApiKeyGrant]:
    grants: Dict[str, ApiKeyGrant] = {}
    for piece in (part.strip() for part in candidate.split(",")):
        if not piece:
            continue
        fields: List[str] = piece.split(":")
        if len(fields) < 2:
            LOGGER.warning("Ignoring malformed X_API_KEYS entry (expected key:user[:plan])")
            continue
        key = fields[0].strip()
        grant = _grant_from_parts(fields[1], fields[2] if len(fields) > 2 else None)
        # First occurrence of a key wins
        if key and grant and key not in grants:
            grants[key] = grant
    return grants


def _parse_api_keys(raw_value: str | None) -> Dict[str, ApiKeyGrant]:
    if not raw_value:
        return {}
    candidate = raw_value.strip()
    if not candidate:
        return {}
    if candidate.startswith("{"):
        grants = _parse_json_grants(candidate)
    else:
        grants = _parse_listed_grants(candidate)
    LOGGER.info("API key slots configured: %d", len(grants))
    return grants


def _choice_from_env(name: str, valid: set[str], default: str, *, upper: bool = False) -> str:
    raw = (os.getenv(name) or "").strip()
    value = raw.upper() if upper else raw.lower()
    if value in valid:
        return value
    if value:
        LOGGER.warning("Invalid %s '%s'; falling back to '%s'", name, raw, default)
    return default


def _bool_from_env(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    LOGGER.warning("Invalid value '%s' for %s; using %s", raw, name, default)
    return default


def _int_from_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        LOGGER.warning("Invalid value '%s' for %s; using %s", raw, name, default)
        return default


def load_config() -> Config:
    """Read environment variables into a Config object."""
    self_hosted = _bool_from_env("SELF_HOSTED")
    if self_hosted:
        LOGGER.info("Self-hosted mode: rate limiting disabled")

    return Config(
        secret_key=os.getenv("SECRET_KEY", DEFAULT_SECRET),
        app_env=_choice_from_env("APP_ENV", VALID_APP_ENVS, DEFAULT_APP_ENV),
        self_hosted=self_hosted,
        request_size_limit=_int_from_env("REQUEST_MAX_BYTES", Config.request_size_limit),
        rate_limit_backend=_choice_from_env("RATE_LIMIT_BACKEND", VALID_BACKENDS, DEFAULT_BACKEND),
        database_url=os.getenv("DATABASE_URL", _DEFAULT_DATABASE_URL),
        log_level=_choice_from_env("LOG_LEVEL", VALID_LOG_LEVELS, DEFAULT_LOG_LEVEL, upper=True),
        api_keys=_parse_api_keys(os.getenv("X_API_KEYS")),
    )
