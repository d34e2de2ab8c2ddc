import logging

import pytest

from services.plans import PlanTier
from services.ratelimit import (
    PRESETS,
    CallerIdentity,
    RateLimitConfig,
    RateLimiter,
    resolve_identity,
)
from services.window_store import IdentifierType, InMemoryWindowStore

ALICE = CallerIdentity("user-alice", IdentifierType.USER)
BOB = CallerIdentity("user-bob", IdentifierType.USER)


class BrokenStore(InMemoryWindowStore):
    def increment_or_create(self, key, now_ms, window_ms, max_requests):
        raise RuntimeError("database unavailable")


@pytest.fixture()
def limiter(clock):
    return RateLimiter(InMemoryWindowStore(), clock=clock)


def _config(**overrides):
    values = {"window_ms": 60_000, "max_requests": 3, "endpoint": "test"}
    values.update(overrides)
    return RateLimitConfig(**values)


def test_remaining_drops_by_one_per_admission(limiter, clock):
    config = _config(max_requests=5)
    remaining = []
    for _ in range(5):
        decision = limiter.admit(ALICE, config)
        assert decision.allowed
        remaining.append(int(decision.headers()["X-RateLimit-Remaining"]))
        clock.advance(1)
    assert remaining == [4, 3, 2, 1, 0]


def test_request_over_limit_is_denied_with_retry_after(limiter, clock):
    config = _config()
    for _ in range(3):
        assert limiter.admit(ALICE, config).allowed
    clock.advance(10.5)

    denied = limiter.admit(ALICE, config)

    assert not denied.allowed
    assert denied.retry_after == 50
    headers = denied.headers()
    assert headers["Retry-After"] == "50"
    assert headers["X-RateLimit-Remaining"] == "0"
    assert headers["X-RateLimit-Limit"] == "3"
    assert denied.error_body() == {
        "error": "Rate limit exceeded",
        "message": config.message,
        "retryAfter": 50,
    }


def test_denials_do_not_consume_quota(limiter, clock):
    config = _config(max_requests=1)
    limiter.admit(ALICE, config)
    for _ in range(5):
        assert not limiter.admit(ALICE, config).allowed
    window = limiter.store.find_open(
        limiter.store.all()[0].key, limiter.now_ms(), config.window_ms
    )
    assert window.count == 1


def test_identifier_is_admitted_again_after_window(limiter, clock):
    config = _config(max_requests=1)
    assert limiter.admit(ALICE, config).allowed
    assert not limiter.admit(ALICE, config).allowed

    clock.advance(60)
    fresh = limiter.admit(ALICE, config)

    assert fresh.allowed
    assert fresh.remaining == 0
    assert fresh.window_start == limiter.now_ms()


def test_identifiers_and_endpoints_are_independent(limiter):
    first = _config(max_requests=1, endpoint="endpoint1")
    second = _config(max_requests=1, endpoint="endpoint2")

    assert limiter.admit(ALICE, first).allowed
    assert not limiter.admit(ALICE, first).allowed
    assert limiter.admit(BOB, first).allowed
    assert limiter.admit(ALICE, second).allowed


def test_reset_header_is_iso_timestamp(limiter):
    decision = limiter.admit(ALICE, _config())
    assert decision.headers()["X-RateLimit-Reset"] == "2023-11-14T22:14:20.000Z"


def test_self_hosted_bypasses_store(clock):
    store = InMemoryWindowStore()
    limiter = RateLimiter(store, self_hosted=True, clock=clock)
    config = _config(max_requests=1)

    decisions = [limiter.admit(ALICE, config) for _ in range(5)]

    assert all(d.allowed and d.bypassed for d in decisions)
    assert decisions[0].headers() == {}
    assert store.all() == []


def test_store_failure_fails_open(clock, caplog):
    limiter = RateLimiter(BrokenStore(), clock=clock)
    with caplog.at_level(logging.ERROR, logger="services.ratelimit"):
        decision = limiter.admit(ALICE, _config())
    assert decision.allowed
    assert decision.degraded
    assert decision.headers() == {}
    assert "Rate limiting error" in caplog.text


def test_plan_multiplier_scales_limit_and_relabels_endpoint(limiter):
    config = _config(max_requests=10, endpoint="api")

    pro = limiter.admit_for_plan(ALICE, config, lambda: PlanTier.PRO)
    anonymous = limiter.admit_for_plan(BOB, config, lambda: PlanTier.ANONYMOUS)

    assert pro.limit == 50
    assert pro.endpoint == "api_pro"
    assert anonymous.limit == 5
    assert anonymous.endpoint == "api_anonymous"


def test_each_plan_tier_has_its_own_counter(limiter):
    config = _config(max_requests=2, endpoint="api")
    assert limiter.admit_for_plan(ALICE, config, lambda: PlanTier.ANONYMOUS).allowed
    assert not limiter.admit_for_plan(ALICE, config, lambda: PlanTier.ANONYMOUS).allowed
    assert limiter.admit_for_plan(ALICE, config, lambda: PlanTier.FREE).allowed


def test_plan_lookup_failure_falls_back_to_base_limit(limiter, caplog):
    def broken_resolver():
        raise LookupError("no plan")

    config = _config(max_requests=4, endpoint="api")
    with caplog.at_level(logging.WARNING, logger="services.ratelimit"):
        decision = limiter.admit_for_plan(ALICE, config, broken_resolver)

    assert decision.allowed
    assert decision.limit == 4
    assert decision.endpoint == "api"
    assert "Plan lookup failed" in caplog.text


def test_skip_failed_requests_refunds_admission(limiter):
    config = _config(max_requests=1, skip_failed_requests=True)
    decision = limiter.admit(ALICE, config)

    assert limiter.settle(decision, config, 500)
    assert limiter.admit(ALICE, config).allowed


def test_skip_successful_requests_refunds_admission(limiter):
    config = _config(max_requests=1, skip_successful_requests=True)
    decision = limiter.admit(ALICE, config)

    assert limiter.settle(decision, config, 200)
    retry = limiter.admit(ALICE, config)
    assert retry.allowed

    assert not limiter.settle(retry, config, 404)
    assert not limiter.admit(ALICE, config).allowed


def test_settle_without_skip_flags_keeps_admission(limiter):
    config = _config(max_requests=1)
    decision = limiter.admit(ALICE, config)
    assert not limiter.settle(decision, config, 500)
    assert not limiter.admit(ALICE, config).allowed


def test_identity_prefers_key_generator_then_user_then_address():
    keyed = _config(key_generator=lambda req: req["api_key"])
    plain = _config()

    assert resolve_identity(keyed, {"api_key": "key1"}, user_id="u1") == CallerIdentity(
        "key1", IdentifierType.IP
    )
    assert resolve_identity(plain, None, user_id="u1", remote_addr="10.0.0.1") == CallerIdentity(
        "u1", IdentifierType.USER
    )
    assert resolve_identity(plain, None, remote_addr="10.0.0.1") == CallerIdentity(
        "10.0.0.1", IdentifierType.IP
    )
    assert resolve_identity(plain) == CallerIdentity("unknown", IdentifierType.IP)


@pytest.mark.parametrize(
    "overrides",
    [{"window_ms": 0}, {"max_requests": -1}, {"endpoint": ""}],
)
def test_invalid_config_is_rejected(overrides):
    with pytest.raises(ValueError):
        _config(**overrides)


def test_presets_match_documented_quotas():
    assert PRESETS["auth"].max_requests == 20
    assert PRESETS["auth"].window_ms == 15 * 60 * 1000
    assert PRESETS["auth"].message.startswith("Too many authentication attempts")
    assert PRESETS["normal"].max_requests == 200
    assert PRESETS["dev"].max_requests == 1000
