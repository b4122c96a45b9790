# backend/rentals/__init__.py
from flask import Flask

from .config import Config
from .extensions import db, migrate


def create_app(config_overrides: dict | None = None, *, payment_provider=None, dispatcher=None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Collaborators: payment provider (optional) and notification transport
    from .services.notification_service import init_notifications
    from .services.payment_provider import init_payment_provider
    init_payment_provider(app, payment_provider)
    init_notifications(app, dispatcher)

    # Register blueprints
    from .routes.system import system_bp
    from .routes.storefront import storefront_bp
    from .routes.reservations import reservations_bp
    from .routes.payments import payments_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(storefront_bp)
    app.register_blueprint(reservations_bp)
    app.register_blueprint(payments_bp)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
