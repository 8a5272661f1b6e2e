# backend/ordercore/__init__.py
from flask import Flask

from .config import Config
from .extensions import db, migrate


def create_app(test_config: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if test_config:
        app.config.from_mapping(test_config)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Append-only audit tables reject UPDATE / DELETE at flush time
    from .immutability import register_immutability_listeners
    register_immutability_listeners()

    # Register blueprints
    from .routes.system import system_bp
    from .routes.leads import leads_bp
    from .routes.orders import orders_bp
    from .routes.inventory import inventory_bp
    from .routes.finance import finance_bp
    from .routes.dispatch import dispatch_bp
    from .routes.returns import returns_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(leads_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(inventory_bp)
    app.register_blueprint(finance_bp)
    app.register_blueprint(dispatch_bp)
    app.register_blueprint(returns_bp)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
