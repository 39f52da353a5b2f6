from flask import Flask

from .config import Config
from .extensions import db, enable_sqlite_transactions, migrate


def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    # Overrides must land before db.init_app; engines are built there
    if config_overrides:
        app.config.update(config_overrides)

    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    with app.app_context():
        if db.engine.dialect.name == "sqlite":
            enable_sqlite_transactions(db.engine)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    from .immutability import register_immutability_listeners
    register_immutability_listeners()

    # Register blueprints
    from .routes.system import system_bp
    from .routes.purchase_requests import purchase_requests_bp
    from .routes.ledger import ledger_bp
    from .routes.loyalty import loyalty_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(purchase_requests_bp)
    app.register_blueprint(ledger_bp)
    app.register_blueprint(loyalty_bp)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
