# backend/reconciler/__init__.py
import socket
import uuid

from flask import Flask

from .config import Config
from .extensions import db, migrate
from .logging_setup import configure_logging


def _instance_worker_id() -> str:
    value = f"{socket.gethostname() or 'local'}:{uuid.uuid4().hex[:8]}"
    return value[:64]


def create_app(config_overrides: dict | None = None, invoice_status_provider=None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    if not app.config.get("WORKER_ID"):
        app.config["WORKER_ID"] = _instance_worker_id()

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    configure_logging(app)

    # Provider status client used by janitor job1 (None until wired)
    app.extensions["invoice_status_provider"] = invoice_status_provider

    # Register blueprints
    from .routes.webhooks import webhooks_bp

    app.register_blueprint(webhooks_bp)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
