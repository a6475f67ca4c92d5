# Overview: Request decorators for API routes.

from functools import wraps
from flask import request, jsonify, g


ACTOR_HEADER = "X-User-Id"


def require_actor(f):
    """
    Require the acting user id forwarded by the authenticating gateway.

    Sets g.actor_id. Returns 401 if the header is missing or is not a
    positive integer. Authentication itself happens upstream.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        raw = (request.headers.get(ACTOR_HEADER) or "").strip()

        if not (raw.isascii() and raw.isdecimal()) or int(raw) <= 0:
            return jsonify({
                "error": "Authentication required",
                "code": "UNAUTHENTICATED",
                "details": {"header": ACTOR_HEADER},
            }), 401

        g.actor_id = int(raw)
        return f(*args, **kwargs)

    return decorated_function
