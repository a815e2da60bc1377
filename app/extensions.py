"""
Deferred extension instances.

Created here, bound to the app in create_app() via init_app().
"""

from flask import jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_login import LoginManager
from flask_wtf.csrf import CSRFProtect
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

db = SQLAlchemy()
migrate = Migrate()
login_manager = LoginManager()
csrf = CSRFProtect()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],  # No global limit, refunds are limited per route
    storage_uri="memory://",
)


@login_manager.user_loader
def load_tenant(tenant_id):
    """Load the tenant account by ID from session. Imports lazily to avoid circular deps."""
    from app.models.tenant import TenantAccount

    return db.session.get(TenantAccount, tenant_id)


@login_manager.unauthorized_handler
def unauthorized():
    """The payments API is JSON-only, so no redirect to a login page."""
    return jsonify({"error": "unauthenticated", "message": "Login required."}), 401
