"""
API server — Flask app factory.

Creates and configures the Flask application that exposes the
coordinator to remote lock holders (CI runners, other hosts).
"""

from __future__ import annotations

import logging
from pathlib import Path

from flask import Flask

from statekeeper.core.engine.coordinator import StateCoordinator

logger = logging.getLogger(__name__)


def create_app(
    config_path: Path | None = None,
    coordinator: StateCoordinator | None = None,
) -> Flask:
    """Create and configure the Flask application.

    Args:
        config_path: Path to statekeeper.yml (ignored if ``coordinator`` given).
        coordinator: An already-open store.

    Raises:
        ConfigError / BackendConfigError: The store cannot be opened.
    """
    if coordinator is None:
        from statekeeper.core.use_cases.bootstrap import open_store

        coordinator = open_store(config_path)

    app = Flask(__name__)
    app.config["COORDINATOR"] = coordinator
    app.config["MAX_CONTENT_LENGTH"] = 256 * 1024 * 1024  # 256 MB upload limit

    from statekeeper.ui.web.helpers import register_error_handlers
    from statekeeper.ui.web.routes_locks import locks_bp
    from statekeeper.ui.web.routes_state import state_bp

    app.register_blueprint(locks_bp, url_prefix="/api")
    app.register_blueprint(state_bp, url_prefix="/api")
    register_error_handlers(app)

    logger.info("API app created (store=%s)", coordinator.config.name)
    return app


def run_server(
    app: Flask,
    host: str = "127.0.0.1",
    port: int = 8000,
    debug: bool = False,
) -> None:
    """Run the Flask development server."""
    logger.info("Starting API on %s:%d", host, port)
    app.run(host=host, port=port, debug=debug, use_reloader=False, threaded=True)
