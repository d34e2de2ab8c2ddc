import pytest
from flask import Flask, g, request

from services.decorators import (
    EXTENSION_KEY,
    development_only,
    has_plan_rate_limit,
    json_endpoint,
    plan_rate_limit,
    rate_limit,
    require_api_key,
)
from services.plans import PlanTier
from services.ratelimit import RateLimitConfig, RateLimiter
from services.window_store import IdentifierType, InMemoryWindowStore


@pytest.fixture()
def app(clock):
    app = Flask(__name__)
    app.config["TESTING"] = True
    app.extensions[EXTENSION_KEY] = RateLimiter(InMemoryWindowStore(), clock=clock)

    @app.before_request
    def attach_caller():
        g.user_id = request.headers.get("X-Test-User")
        plan = request.headers.get("X-Test-Plan")
        g.plan_tier = PlanTier(plan) if plan else None
        g.api_grant = object() if g.user_id else None

    @app.route("/json")
    @json_endpoint
    def json_view():
        return {"status": "ok"}

    @app.route("/json-error")
    @json_endpoint
    def json_error():
        raise ValueError("bad input")

    @app.route("/limited")
    @rate_limit(RateLimitConfig(window_ms=60_000, max_requests=2, endpoint="limited"))
    @json_endpoint
    def limited():
        return {"message": "allowed"}

    @app.route("/custom")
    @rate_limit(
        RateLimitConfig(
            window_ms=60_000,
            max_requests=1,
            endpoint="custom",
            message="Slow down!",
            key_generator=lambda req: req.headers.get("X-Api-Key") or "unknown",
        )
    )
    @json_endpoint
    def custom():
        return {"message": "allowed"}

    @app.route("/flaky")
    @rate_limit(
        RateLimitConfig(
            window_ms=60_000, max_requests=1, endpoint="flaky", skip_failed_requests=True
        )
    )
    @json_endpoint
    def flaky():
        if request.args.get("fail"):
            raise ValueError("failed")
        return {"message": "ok"}

    @app.route("/plan")
    @plan_rate_limit(RateLimitConfig(window_ms=60_000, max_requests=2, endpoint="plan"))
    @json_endpoint
    def plan():
        return {"message": "allowed"}

    @app.route("/secure")
    @require_api_key
    @json_endpoint
    def secure():
        return {"secure": True}

    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def _store(app):
    return app.extensions[EXTENSION_KEY].store


def test_json_endpoint_success(client):
    response = client.get("/json")
    assert response.status_code == 200
    assert response.get_json()["status"] == "ok"


def test_json_endpoint_handles_value_error(client):
    response = client.get("/json-error")
    assert response.status_code == 400
    assert response.get_json()["error"] == "bad input"


def test_rate_limit_sets_headers_then_blocks(client):
    first = client.get("/limited")
    second = client.get("/limited")
    assert first.status_code == 200
    assert first.headers["X-RateLimit-Limit"] == "2"
    assert first.headers["X-RateLimit-Remaining"] == "1"
    assert second.headers["X-RateLimit-Remaining"] == "0"

    blocked = client.get("/limited")

    assert blocked.status_code == 429
    body = blocked.get_json()
    assert body["error"] == "Rate limit exceeded"
    assert 0 < body["retryAfter"] <= 60
    assert blocked.headers["Retry-After"] == str(body["retryAfter"])


def test_rate_limit_resets_after_window(client, clock):
    client.get("/limited")
    client.get("/limited")
    assert client.get("/limited").status_code == 429
    clock.advance(61)
    response = client.get("/limited")
    assert response.status_code == 200
    assert response.headers["X-RateLimit-Remaining"] == "1"


def test_anonymous_callers_are_keyed_by_address(app, client):
    client.get("/limited")
    [window] = _store(app).all()
    assert window.type == IdentifierType.IP
    assert window.identifier == "127.0.0.1"


def test_authenticated_callers_are_keyed_by_user(app, client):
    client.get("/limited", headers={"X-Test-User": "user-1"})
    client.get("/limited", headers={"X-Test-User": "user-1"})
    assert client.get("/limited", headers={"X-Test-User": "user-1"}).status_code == 429
    assert client.get("/limited", headers={"X-Test-User": "user-2"}).status_code == 200
    users = {w.identifier for w in _store(app).all() if w.type == IdentifierType.USER}
    assert users == {"user-1", "user-2"}


def test_custom_key_generator_and_message(client):
    assert client.get("/custom", headers={"X-Api-Key": "key1"}).status_code == 200
    blocked = client.get("/custom", headers={"X-Api-Key": "key1"})
    assert blocked.status_code == 429
    assert blocked.get_json()["message"] == "Slow down!"
    assert client.get("/custom", headers={"X-Api-Key": "key2"}).status_code == 200


def test_failed_requests_do_not_count_when_skipped(client):
    assert client.get("/flaky?fail=1").status_code == 400
    assert client.get("/flaky?fail=1").status_code == 400
    assert client.get("/flaky").status_code == 200
    assert client.get("/flaky").status_code == 429


def test_plan_rate_limit_scales_by_tier(app, client):
    pro_headers = {"X-Test-User": "user-1", "X-Test-Plan": "pro"}
    response = client.get("/plan", headers=pro_headers)
    assert response.headers["X-RateLimit-Limit"] == "10"

    anonymous = client.get("/plan")
    assert anonymous.headers["X-RateLimit-Limit"] == "1"
    assert client.get("/plan").status_code == 429

    endpoints = {w.endpoint for w in _store(app).all()}
    assert endpoints == {"plan_pro", "plan_anonymous"}


def test_plan_rate_limit_falls_back_when_plan_unknown(client):
    # A user id without a plan on record cannot be resolved.
    response = client.get("/plan", headers={"X-Test-User": "ghost"})
    assert response.status_code == 200
    assert response.headers["X-RateLimit-Limit"] == "2"


def test_self_hosted_limiter_never_blocks(app, clock):
    app.extensions[EXTENSION_KEY] = RateLimiter(
        InMemoryWindowStore(), self_hosted=True, clock=clock
    )
    client = app.test_client()
    for _ in range(5):
        response = client.get("/limited")
        assert response.status_code == 200
        assert "X-RateLimit-Limit" not in response.headers


def test_require_api_key(client):
    assert client.get("/secure").status_code == 401
    assert client.get("/secure", headers={"X-Test-User": "user-1"}).status_code == 200


def test_plan_rate_limit_marks_the_registered_view(app):
    assert has_plan_rate_limit(app.view_functions["plan"])
    assert not has_plan_rate_limit(app.view_functions["limited"])
    wrapped = require_api_key(plan_rate_limit("api")(lambda: {}))
    assert has_plan_rate_limit(wrapped)
    assert not has_plan_rate_limit(None)


@pytest.mark.parametrize("app_env,expected", [("development", 200), ("production", 404)])
def test_development_only(app, app_env, expected):
    app.config["APP_ENV"] = app_env

    @app.route("/debug")
    @development_only
    @json_endpoint
    def debug():
        return {"debug": True}

    assert app.test_client().get("/debug").status_code == expected
