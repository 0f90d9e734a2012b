"""
Flask application factory.

Creates and configures the Flask app, registers all blueprints.
"""
import importlib

from flask import Flask

_MODELS = [
    'leadflow.models.pipeline',
    'leadflow.models.team',
    'leadflow.models.lead',
    'leadflow.models.interaction',
    'leadflow.models.automation_rule',
    'leadflow.models.cadence',
    'leadflow.models.sla_config',
    'leadflow.models.execution',
    'leadflow.models.notification',
    'leadflow.models.task',
    'leadflow.models.history',
    'leadflow.models.message',
    'leadflow.models.automation_run',
]


def import_models():
    """Import every model so Base.metadata knows all tables."""
    for name in _MODELS:
        importlib.import_module(name)


def create_app():
    """Create and configure the Flask application."""
    from leadflow.logging_config import configure_logging
    from leadflow.errors import register_error_handlers

    app = Flask(__name__)

    configure_logging(app)
    register_error_handlers(app)

    # Register blueprints
    from leadflow.routes.automation import bp as automation_bp
    from leadflow.routes.messages import bp as messages_bp
    from leadflow.routes.monitor import bp as monitor_bp

    app.register_blueprint(automation_bp)
    app.register_blueprint(messages_bp)
    app.register_blueprint(monitor_bp)

    # Initialize circuit breakers for outbound collaborators
    from leadflow.extensions import redis_client
    from leadflow.services.circuit_breaker import init_breakers
    init_breakers(redis_client)

    # Schema is managed by Alembic — no create_all() here.
    import_models()

    return app
