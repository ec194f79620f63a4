# designauto/__init__.py
import logging

from flask import Flask

from .config import Config
from .extensions import db, migrate


def create_app(overrides=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)

    logging.basicConfig(level=app.config.get("LOG_LEVEL", "INFO"))

    # Initialize database
    db.init_app(app)
    migrate.init_app(app, db)

    # Register models (so SQLAlchemy knows about them)
    with app.app_context():
        from . import models  # noqa: F401

    from .app import bp as webhooks_bp
    from .admin import bp as admin_bp
    app.register_blueprint(webhooks_bp)
    app.register_blueprint(admin_bp)

    from .commands import expire_subscriptions_command, init_db_command, reprocess_pending_command
    app.cli.add_command(init_db_command)
    app.cli.add_command(reprocess_pending_command)
    app.cli.add_command(expire_subscriptions_command)

    return app
