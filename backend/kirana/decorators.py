# Overview: Request and role decorators for API routes.

from functools import wraps
from flask import request, jsonify, g, current_app

from .extensions import db
from .models import User
from .services.order_service import Actor

# Set by the authentication gateway in front of this service.
ACTOR_HEADER = "X-User-Id"


def _is_authenticated() -> bool:
    return hasattr(g, 'actor') and hasattr(g, 'current_user')


def require_actor(f):
    """
    Resolve the calling user.

    Sets the following Flask g attributes:
    - g.current_user: the User row
    - g.actor: Actor(user_id, roles) handed to services

    SECURITY: Returns 401 if the header is missing/malformed or the user is
    unknown or deactivated.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        raw = request.headers.get(ACTOR_HEADER, "").strip()
        if not raw:
            return jsonify({"error": "Authentication required"}), 401
        try:
            user_id = int(raw)
        except ValueError:
            return jsonify({"error": "Authentication required"}), 401

        user = db.session.get(User, user_id)
        if user is None or not user.is_active:
            current_app.logger.warning("Rejected request from unknown or inactive user %s", raw)
            return jsonify({"error": "Invalid or inactive user"}), 401

        g.current_user = user
        g.actor = Actor.from_user(user)
        return f(*args, **kwargs)

    return decorated_function


def require_role(*roles: str):
    """Require at least one of the given roles. Use after @require_actor."""
    wanted = frozenset(roles)

    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not _is_authenticated():
                return jsonify({"error": "Authentication required"}), 401
            if not (g.actor.roles & wanted):
                return jsonify({
                    "error": "Permission denied",
                    "required_roles": sorted(wanted),
                }), 403
            return f(*args, **kwargs)

        return decorated_function

    return decorator
