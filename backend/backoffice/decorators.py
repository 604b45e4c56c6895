# Overview: Request and role decorators for API routes.

from functools import wraps
from flask import request, jsonify, g

from .services import session_service


def _unauthorized(msg: str):
    return jsonify({"success": False, "msg": msg}), 401


def require_auth(f):
    """
    Require a valid bearer token and establish the actor.

    Sets g.actor (ActorContext) for the route and the services it calls.

    SECURITY: Returns 401 if:
    - No Authorization header
    - Invalid, expired or revoked token
    - User account deactivated
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")

        if not auth_header or not auth_header.startswith("Bearer "):
            return _unauthorized("Authentication required")

        token = auth_header.split(" ", 1)[1].strip()
        actor = session_service.validate_session(token)

        if not actor:
            return _unauthorized("Invalid or expired token")

        g.actor = actor
        return f(*args, **kwargs)

    return decorated_function


def require_role(*roles: str):
    """
    Require the authenticated actor to hold one of the given roles.

    Must be applied after @require_auth.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            actor = getattr(g, "actor", None)
            if actor is None:
                return _unauthorized("Authentication required")

            if actor.role not in roles:
                return jsonify({
                    "success": False,
                    "msg": "Permission denied",
                    "required_roles": sorted(roles),
                }), 403

            return f(*args, **kwargs)

        return decorated_function
    return decorator
