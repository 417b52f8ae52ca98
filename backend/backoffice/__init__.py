# backend/backoffice/__init__.py
import logging

from flask import Flask

from .config import Config
from .extensions import db, enable_sqlite_savepoints, migrate


def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    level = logging.getLevelName(str(app.config.get("LOG_LEVEL", "INFO")).upper())
    if isinstance(level, int):
        app.logger.setLevel(level)
        logging.getLogger(__name__).setLevel(level)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)
    if str(app.config.get("SQLALCHEMY_DATABASE_URI", "")).startswith("sqlite"):
        with app.app_context():
            enable_sqlite_savepoints(db.engine)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    from .services import build_services
    build_services(app)

    # Register blueprints
    from .routes.tax import tax_bp
    from .routes.quantities import quantities_bp
    from .routes.transactions import transactions_bp
    from .routes.stock import stock_bp
    from .routes.ledger import ledger_bp

    app.register_blueprint(tax_bp)
    app.register_blueprint(quantities_bp)
    app.register_blueprint(transactions_bp)
    app.register_blueprint(stock_bp)
    app.register_blueprint(ledger_bp)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
