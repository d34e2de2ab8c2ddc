"""Reusable decorators that keep route logic tidy."""
from __future__ import annotations

from functools import wraps
from typing import Any, Callable, Optional

from flask import Response, current_app, g, jsonify, request

from .auth import plan_for_user
from .plans import PlanTier
from .ratelimit import (
    PRESETS,
    CallerIdentity,
    RateLimitConfig,
    RateLimitDecision,
    RateLimiter,
    resolve_identity,
)
from .sessions import SessionNotFoundError

JsonResult = tuple[Any, int] | tuple[Any, int, dict[str, Any]] | Any

EXTENSION_KEY = "rate_limiter"


def _wants_json() -> bool:
    if request.path.startswith("/api/"):
        return True
    accepts = getattr(request, "accept_mimetypes", None)
    if not accepts:
        return False
    best = accepts.best_match(["application/json", "text/html"])
    if best == "application/json" and accepts[best] > accepts["text/html"]:
        return True
    return False


def _unauthorized_response() -> JsonResult:
    headers = {"WWW-Authenticate": "ApiKey"}
    if _wants_json():
        return {"error": "Unauthorized"}, 401, headers
    headers["Content-Type"] = "text/plain"
    return "Unauthorized", 401, headers


def current_limiter() -> RateLimiter:
    return current_app.extensions[EXTENSION_KEY]


def _resolve_config(config: RateLimitConfig | str) -> RateLimitConfig:
    if isinstance(config, str):
        try:
            return PRESETS[config]
        except KeyError:
            raise ValueError(f"Unknown rate limit preset: {config}") from None
    return config


def _caller_plan() -> PlanTier:
    tier = getattr(g, "plan_tier", None)
    if tier is not None:
        return tier
    return plan_for_user(getattr(g, "user_id", None), current_app.config.get("API_GRANTS", {}))


def _limited_response(decision: RateLimitDecision) -> Response:
    response = jsonify(decision.error_body())
    response.status_code = 429
    for key, value in decision.headers().items():
        response.headers[key] = value
    return response


def _identity_for(config: RateLimitConfig) -> CallerIdentity:
    return resolve_identity(
        config,
        request,
        user_id=getattr(g, "user_id", None),
        remote_addr=request.remote_addr,
    )


def enforce_rate_limit(config: RateLimitConfig | str) -> Optional[Response]:
    """Admit the current request outside a view; returns a 429 response on denial.

    The decision is kept on ``g.global_rate_limit`` so its headers can be
    attached once the response exists.
    """
    resolved = _resolve_config(config)
    decision = current_limiter().admit(_identity_for(resolved), resolved)
    g.global_rate_limit = decision
    if not decision.allowed:
        return _limited_response(decision)
    return None


def attach_global_headers(response: Response) -> Response:
    decision = getattr(g, "global_rate_limit", None)
    if decision is None or "X-RateLimit-Limit" in response.headers:
        return response
    for key, value in decision.headers().items():
        response.headers[key] = value
    return response


def _limited_view(
    func: Callable[..., JsonResult],
    config: RateLimitConfig,
    admit: Callable[[RateLimiter, Any], RateLimitDecision],
) -> Callable[..., Any]:
    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any):
        limiter = current_limiter()
        decision = admit(limiter, _identity_for(config))
        g.rate_limit = decision
        if not decision.allowed:
            return _limited_response(decision)

        response = current_app.make_response(func(*args, **kwargs))
        for key, value in decision.headers().items():
            response.headers[key] = value
        limiter.settle(decision, config, response.status_code)
        return response

    return wrapper


def rate_limit(config: RateLimitConfig | str):
    """Admit requests against a sliding window, by config or preset name."""

    resolved = _resolve_config(config)

    def decorator(func: Callable[..., JsonResult]):
        return _limited_view(
            func, resolved, lambda limiter, identity: limiter.admit(identity, resolved)
        )

    return decorator


def plan_rate_limit(config: RateLimitConfig | str):
    """Like :func:`rate_limit`, with the quota scaled by the caller's plan tier."""

    resolved = _resolve_config(config)

    def decorator(func: Callable[..., JsonResult]):
        view = _limited_view(
            func,
            resolved,
            lambda limiter, identity: limiter.admit_for_plan(identity, resolved, _caller_plan),
        )
        # Read by the global limiter hook; survives outer functools.wraps.
        view.plan_rate_limited = True
        return view

    return decorator


def json_endpoint(func: Callable[..., JsonResult]) -> Callable[..., Any]:
    """Ensure JSON responses with standard error handling."""

    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any):
        try:
            result = func(*args, **kwargs)
        except SessionNotFoundError as exc:
            return jsonify({"error": f"Session not found: {exc.args[0]}"}), 404
        except ValueError as exc:  # validation error
            return jsonify({"error": str(exc)}), 400
        except Exception as exc:  # pragma: no cover - log unexpected errors
            current_app.logger.exception(
                "Unhandled error in JSON endpoint", exc_info=exc
            )
            return jsonify({"error": "Internal server error"}), 500

        if isinstance(result, tuple):
            payload = result[0]
            status = result[1]
            headers = result[2] if len(result) > 2 else None
            response = jsonify(payload)
            if headers:
                for key, value in headers.items():
                    response.headers[key] = value
            return response, status
        return jsonify(result)

    return wrapper


def require_api_key(func: Callable[..., JsonResult]) -> Callable[..., Any]:
    """Protect endpoints that need an authenticated caller."""

    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any):
        if getattr(g, "api_grant", None) is None:
            return _unauthorized_response()
        return func(*args, **kwargs)

    return wrapper


def development_only(func: Callable[..., JsonResult]) -> Callable[..., Any]:
    """Answer 404 unless the app runs with ``APP_ENV=development``."""

    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any):
        if current_app.config.get("APP_ENV") != "development":
            return jsonify({"error": "Not found"}), 404
        return func(*args, **kwargs)

    return wrapper


def has_plan_rate_limit(view: Optional[Callable[..., Any]]) -> bool:
    return bool(getattr(view, "plan_rate_limited", False))


def caller_user_id() -> Optional[str]:
    return getattr(g, "user_id", None)
