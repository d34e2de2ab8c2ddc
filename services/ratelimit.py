"""Sliding-window request admission backed by a window store."""
from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from .plans import PlanTier, plan_endpoint, scaled_limit
from .window_store import IdentifierType, WindowKey, WindowStore

LOGGER = logging.getLogger(__name__)

DEFAULT_MESSAGE = "Too many requests, please try again later."
UNKNOWN_ADDRESS = "unknown"


@dataclass(frozen=True)
class RateLimitConfig:
    window_ms: int
    max_requests: int
    endpoint: str
    key_generator: Optional[Callable[[Any], str]] = None
    message: str = DEFAULT_MESSAGE
    skip_successful_requests: bool = False
    skip_failed_requests: bool = False

    def __post_init__(self) -> None:
        if not isinstance(self.window_ms, int) or self.window_ms <= 0:
            raise ValueError("window_ms must be a positive integer")
        if not isinstance(self.max_requests, int) or self.max_requests <= 0:
            raise ValueError("max_requests must be a positive integer")
        if not self.endpoint:
            raise ValueError("endpoint is required")

    def for_plan(self, tier: PlanTier) -> "RateLimitConfig":
        return replace(
            self,
            max_requests=scaled_limit(self.max_requests, tier, self.endpoint),
            endpoint=plan_endpoint(self.endpoint, tier),
        )


PRESETS: Dict[str, RateLimitConfig] = {
    "strict": RateLimitConfig(window_ms=15 * 60 * 1000, max_requests=500, endpoint="strict"),
    "normal": RateLimitConfig(window_ms=60 * 1000, max_requests=200, endpoint="normal"),
    "auth": RateLimitConfig(
        window_ms=15 * 60 * 1000,
        max_requests=20,
        endpoint="auth",
        message="Too many authentication attempts, please try again in 15 minutes.",
    ),
    "api": RateLimitConfig(window_ms=60 * 1000, max_requests=120, endpoint="api"),
    "dev": RateLimitConfig(window_ms=60 * 1000, max_requests=1000, endpoint="dev"),
    "public": RateLimitConfig(window_ms=60 * 1000, max_requests=60, endpoint="public"),
}


@dataclass(frozen=True)
class CallerIdentity:
    identifier: str
    type: IdentifierType


def resolve_identity(
    config: RateLimitConfig,
    request: Any = None,
    *,
    user_id: Optional[str] = None,
    remote_addr: Optional[str] = None,
) -> CallerIdentity:
    """Pick the quota owner: custom key, then user id, then network address."""

    if config.key_generator is not None:
        return CallerIdentity(str(config.key_generator(request)), IdentifierType.IP)
    if user_id:
        return CallerIdentity(str(user_id), IdentifierType.USER)
    return CallerIdentity(remote_addr or UNKNOWN_ADDRESS, IdentifierType.IP)


def _iso_from_ms(value: int) -> str:
    moment = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    endpoint: str
    identity: Optional[CallerIdentity] = None
    remaining: Optional[int] = None
    reset_at: Optional[int] = None
    window_start: Optional[int] = None
    retry_after: Optional[int] = None
    message: str = DEFAULT_MESSAGE
    bypassed: bool = False
    degraded: bool = False

    @property
    def tracked(self) -> bool:
        return not (self.bypassed or self.degraded)

    def headers(self) -> Dict[str, str]:
        if not self.tracked:
            return {}
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining if self.allowed else 0),
            "X-RateLimit-Reset": _iso_from_ms(self.reset_at or 0),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers

    def error_body(self) -> Dict[str, Any]:
        return {
            "error": "Rate limit exceeded",
            "message": self.message,
            "retryAfter": self.retry_after,
        }


class RateLimiter:
    """Admission control over a :class:`WindowStore`.

    ``self_hosted`` switches all limiting off. Store failures never reject a
    request: they are logged and the request is admitted.
    """

    def __init__(
        self,
        store: WindowStore,
        *,
        self_hosted: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.self_hosted = self_hosted
        self._clock = clock

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    def admit(self, identity: CallerIdentity, config: RateLimitConfig) -> RateLimitDecision:
        if self.self_hosted:
            return RateLimitDecision(
                allowed=True,
                limit=config.max_requests,
                endpoint=config.endpoint,
                identity=identity,
                message=config.message,
                bypassed=True,
            )

        now = self.now_ms()
        key = WindowKey(identity.identifier, identity.type, config.endpoint)
        try:
            update = self.store.increment_or_create(
                key, now, config.window_ms, config.max_requests
            )
        except Exception:
            LOGGER.exception(
                "Rate limiting error for %s on %s; allowing request",
                identity.identifier,
                config.endpoint,
            )
            return RateLimitDecision(
                allowed=True,
                limit=config.max_requests,
                endpoint=config.endpoint,
                identity=identity,
                message=config.message,
                degraded=True,
            )

        window = update.window
        reset_at = window.window_start + config.window_ms
        if not update.allowed:
            retry_after = math.ceil((reset_at - now) / 1000)
            LOGGER.info(
                "Rate limit exceeded for %s %s on %s (retry in %ss)",
                identity.type.value,
                identity.identifier,
                config.endpoint,
                retry_after,
            )
            return RateLimitDecision(
                allowed=False,
                limit=config.max_requests,
                endpoint=config.endpoint,
                identity=identity,
                remaining=0,
                reset_at=reset_at,
                window_start=window.window_start,
                retry_after=retry_after,
                message=config.message,
            )

        return RateLimitDecision(
            allowed=True,
            limit=config.max_requests,
            endpoint=config.endpoint,
            identity=identity,
            remaining=max(0, config.max_requests - window.count),
            reset_at=reset_at,
            window_start=window.window_start,
            message=config.message,
        )

    def admit_for_plan(
        self,
        identity: CallerIdentity,
        config: RateLimitConfig,
        plan_resolver: Callable[[], PlanTier],
    ) -> RateLimitDecision:
        """Admit against a quota scaled by the caller's plan tier.

        Each tier counts against its own ``<endpoint>_<tier>`` window. When
        the tier cannot be resolved the unscaled ``config`` applies.
        """
        try:
            plan_config = config.for_plan(plan_resolver())
        except Exception:
            LOGGER.warning(
                "Plan lookup failed for %s; using base limit for %s",
                identity.identifier,
                config.endpoint,
                exc_info=True,
            )
            return self.admit(identity, config)
        return self.admit(identity, plan_config)

    def settle(
        self, decision: RateLimitDecision, config: RateLimitConfig, status_code: int
    ) -> bool:
        """Refund an admission when the response outcome is configured to be skipped.

        Returns True when the admission was given back.
        """
        if not decision.allowed or not decision.tracked or decision.identity is None:
            return False
        failed = status_code >= 400
        if not (
            (failed and config.skip_failed_requests)
            or (not failed and config.skip_successful_requests)
        ):
            return False
        key = WindowKey(decision.identity.identifier, decision.identity.type, decision.endpoint)
        try:
            self.store.release(key, decision.window_start)
        except Exception:
            LOGGER.exception("Could not release rate limit admission for %s", key.identifier)
            return False
        return True
