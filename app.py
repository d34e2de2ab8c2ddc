"""Application entrypoint for the usage governance service."""
from __future__ import annotations

from flask import Flask

from config import Config, load_config
from services.decorators import EXTENSION_KEY
from services.ratelimit import RateLimiter
from services.sessions import SessionTracker
from services.window_store import InMemoryWindowStore, SqliteWindowStore, WindowStore
from web.routes import bp as main_blueprint


def build_window_store(config: Config) -> WindowStore:
    if config.rate_limit_backend == "memory":
        return InMemoryWindowStore()
    return SqliteWindowStore(config.database_url)


def create_app(config: Config | None = None) -> Flask:
    config = config or load_config()
    app = Flask(__name__)
    app.config.update(
        SECRET_KEY=config.secret_key,
        APP_ENV=config.app_env,
        SELF_HOSTED=config.self_hosted,
        REQUEST_SIZE_LIMIT=config.request_size_limit,
        RATE_LIMIT_BACKEND=config.rate_limit_backend,
        DATABASE_URL=config.database_url,
        API_GRANTS=dict(config.api_keys),
    )
    app.logger.setLevel(config.log_level)

    store = build_window_store(config)
    app.extensions[EXTENSION_KEY] = RateLimiter(store, self_hosted=config.self_hosted)
    app.extensions["session_tracker"] = SessionTracker()
    app.register_blueprint(main_blueprint)
    app.logger.info(
        "Usage governance ready (env=%s, backend=%s, self_hosted=%s)",
        config.app_env,
        config.rate_limit_backend,
        config.self_hosted,
    )
    return app


if __name__ == "__main__":
    create_app().run(host="0.0.0.0", port=8000, debug=False)
