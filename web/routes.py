"""HTTP routes for the usage governance service."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List

from flask import Blueprint, current_app, g, request

from core.activity import IDLE_THRESHOLD, summarize_activity
from services.auth import resolve_api_key
from services.decorators import (
    attach_global_headers,
    caller_user_id,
    current_limiter,
    development_only,
    enforce_rate_limit,
    has_plan_rate_limit,
    json_endpoint,
    plan_rate_limit,
    rate_limit,
    require_api_key,
)
from services.plans import PlanTier, multiplier_for, scaled_limit
from services.ratelimit import PRESETS, UNKNOWN_ADDRESS
from services.sessions import SessionNotFoundError
from services.window_store import IdentifierType, RateLimitWindow

bp = Blueprint("main", __name__)

MAX_HEARTBEATS_PER_REQUEST = 5000


@bp.before_app_request
def _enforce_limits():
    max_size = current_app.config.get("REQUEST_SIZE_LIMIT")
    if max_size and request.content_length and request.content_length > max_size:
        return ("Request too large", 413)


@bp.before_app_request
def _hydrate_caller() -> None:
    grant = resolve_api_key(
        request.headers.get("X-API-Key"), current_app.config.get("API_GRANTS", {})
    )
    g.api_grant = grant
    g.user_id = grant.user_id if grant else None
    g.plan_tier = grant.plan if grant else None


@bp.before_app_request
def _global_rate_limit():
    if not request.path.startswith("/api/"):
        return None
    # Plan-aware routes enforce their own, possibly larger, quota.
    if has_plan_rate_limit(current_app.view_functions.get(request.endpoint)):
        return None
    preset = "dev" if current_app.config.get("APP_ENV") == "development" else "normal"
    return enforce_rate_limit(preset)


@bp.after_app_request
def _global_rate_limit_headers(response):
    return attach_global_headers(response)


def _parse_timestamp(value: Any, field: str) -> datetime:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{field} must be an ISO-8601 timestamp")
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValueError(f"{field} must be an ISO-8601 timestamp") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _optional_timestamp(payload: Dict[str, Any], field: str) -> datetime:
    if payload.get(field) is None:
        return datetime.now(timezone.utc)
    return _parse_timestamp(payload[field], field)


def _parse_heartbeats(value: Any) -> List[datetime]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError("heartbeats must be a list")
    if len(value) > MAX_HEARTBEATS_PER_REQUEST:
        raise ValueError("too many heartbeats")
    return [_parse_timestamp(item, "heartbeats[]") for item in value]


def _owned_session(session_id: str):
    tracker = current_app.extensions["session_tracker"]
    session = tracker.get(session_id)
    if session.user_id != caller_user_id():
        raise SessionNotFoundError(session_id)
    return tracker


def _session_id(payload: Dict[str, Any]) -> str:
    value = payload.get("session_id")
    if not isinstance(value, str) or not value.strip():
        raise ValueError("session_id is required")
    return value.strip()


@bp.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@bp.get("/api/limits")
@plan_rate_limit("api")
@json_endpoint
def api_limits() -> Dict[str, Any]:
    base = PRESETS["api"]
    tier = g.plan_tier or PlanTier.ANONYMOUS
    return {
        "plan": tier.value,
        "multiplier": multiplier_for(tier, base.endpoint),
        "limit": scaled_limit(base.max_requests, tier, base.endpoint),
        "window_ms": base.window_ms,
        "self_hosted": current_app.config.get("SELF_HOSTED", False),
    }


@bp.post("/api/active-time")
@rate_limit("public")
@json_endpoint
def api_active_time() -> Dict[str, Any]:
    payload = request.get_json(silent=True) or {}
    start = _parse_timestamp(payload.get("start"), "start")
    end = _parse_timestamp(payload.get("end"), "end")
    heartbeats = _parse_heartbeats(payload.get("heartbeats"))
    summary = summarize_activity(start, end, heartbeats)
    result: Dict[str, Any] = summary.as_dict()
    result["idle_threshold_ms"] = int(IDLE_THRESHOLD.total_seconds() * 1000)
    return result


@bp.post("/api/sessions")
@require_api_key
@plan_rate_limit("api")
@json_endpoint
def start_session() -> tuple[Dict[str, Any], int]:
    payload = request.get_json(silent=True) or {}
    session_id = _session_id(payload)
    started_at = _optional_timestamp(payload, "started_at")
    tracker = current_app.extensions["session_tracker"]
    tracker.start(session_id, caller_user_id(), started_at)
    return {"session_id": session_id, "started_at": started_at.isoformat()}, 201


@bp.post("/api/sessions/<session_id>/heartbeat")
@require_api_key
@plan_rate_limit("api")
@json_endpoint
def session_heartbeat(session_id: str) -> Dict[str, Any]:
    payload = request.get_json(silent=True) or {}
    at = _optional_timestamp(payload, "at")
    tracker = _owned_session(session_id)
    retained = tracker.heartbeat(session_id, at)
    return {"session_id": session_id, "heartbeats": retained}


@bp.post("/api/sessions/<session_id>/end")
@require_api_key
@plan_rate_limit("api")
@json_endpoint
def end_session(session_id: str) -> Dict[str, Any]:
    payload = request.get_json(silent=True) or {}
    ended_at = _optional_timestamp(payload, "ended_at")
    tracker = _owned_session(session_id)
    summary = tracker.end(session_id, ended_at)
    current_app.logger.info(
        "Session %s ended: %sms active of %sms",
        session_id,
        summary.active_ms,
        summary.raw_ms,
    )
    return {"session": summary.as_dict()}


def _window_dict(window: RateLimitWindow) -> Dict[str, Any]:
    return {
        "endpoint": window.endpoint,
        "count": window.count,
        "window_start": window.window_start,
        "window_duration_ms": window.window_duration_ms,
    }


def _caller_address() -> str:
    return request.remote_addr or UNKNOWN_ADDRESS


@bp.get("/api/debug/rate-limits/status")
@development_only
@require_api_key
@json_endpoint
def rate_limit_status() -> Dict[str, Any]:
    store = current_limiter().store
    user_windows = store.for_identifier(caller_user_id(), IdentifierType.USER)
    ip_windows = store.for_identifier(_caller_address(), IdentifierType.IP)
    return {
        "user_limits": [_window_dict(window) for window in user_windows],
        "ip_limits": [_window_dict(window) for window in ip_windows],
    }


@bp.delete("/api/debug/rate-limits/me")
@development_only
@require_api_key
@json_endpoint
def clear_my_rate_limits() -> Dict[str, Any]:
    removed = current_limiter().store.clear_identifier(caller_user_id(), IdentifierType.USER)
    current_app.logger.info("Cleared %s rate limit windows for user %s", removed, caller_user_id())
    return {"message": "Rate limits cleared", "deleted_count": removed}


@bp.delete("/api/debug/rate-limits/ip")
@development_only
@json_endpoint
def clear_ip_rate_limits() -> Dict[str, Any]:
    address = _caller_address()
    removed = current_limiter().store.clear_identifier(address, IdentifierType.IP)
    current_app.logger.info("Cleared %s rate limit windows for %s", removed, address)
    return {"message": "IP rate limits cleared", "deleted_count": removed}
