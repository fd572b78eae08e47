"""Blueprint registration."""

from routes.admin import admin_bp
from routes.auth import auth_bp
from routes.dashboard import dashboard_bp
from routes.plans import plans_bp
from routes.profile import profile_bp
from routes.subscriptions import subscriptions_bp
from routes.webhooks import webhooks_bp

ALL_BLUEPRINTS = [
    auth_bp,
    plans_bp,
    subscriptions_bp,
    dashboard_bp,
    profile_bp,
    webhooks_bp,
    admin_bp,
]


def register_blueprints(app):
    """Register all application blueprints on *app*."""
    for bp in ALL_BLUEPRINTS:
        app.register_blueprint(bp)
