# Overview: Request actor and role decorators for API routes.

from functools import wraps
from flask import request, jsonify, g

from .extensions import db
from .models import User
from .models.auth import ROLE_SUPER_ADMIN


ACTOR_HEADER = "X-Actor-Id"


def _is_authenticated() -> bool:
    return hasattr(g, 'current_user') and hasattr(g, 'org_id')


def is_super_admin() -> bool:
    return _is_authenticated() and g.current_user.role == ROLE_SUPER_ADMIN


def require_actor(*roles):
    """
    Resolve the acting user and establish tenant context.

    Identity is verified by the upstream gateway, which forwards the user id
    in the X-Actor-Id header. This decorator only loads that user and checks
    the role.

    Sets:
    - g.current_user: the acting User
    - g.org_id: the user's organization (None for super admins)

    Returns 401 if the header is missing, malformed or names an unknown or
    deactivated user; 403 if the user's role is not in `roles` (when given).
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            raw = request.headers.get(ACTOR_HEADER)
            if not raw:
                return jsonify({"error": "Authentication required"}), 401
            try:
                actor_id = int(raw)
            except ValueError:
                return jsonify({"error": f"{ACTOR_HEADER} must be an integer"}), 401

            user = db.session.get(User, actor_id)
            if user is None or not user.is_active:
                return jsonify({"error": "Unknown or deactivated user"}), 401

            if roles and user.role not in roles:
                return jsonify({
                    "error": "Permission denied",
                    "required_roles": list(roles),
                }), 403

            g.current_user = user
            g.org_id = user.org_id

            return f(*args, **kwargs)

        return decorated_function
    return decorator


def scoped_org_id():
    """Tenant filter for reads: super admins see every organization."""
    if is_super_admin():
        return None
    return g.org_id
