# src/campus_gate/routes/actor.py
from functools import wraps

from flask import g, request

from campus_gate.exceptions import NotAuthorizedError


def current_actor():
    """(role, account id) as forwarded by the upstream auth layer."""
    role = (request.headers.get("X-Actor-Role") or "").strip().lower()
    if not role:
        raise NotAuthorizedError("Missing X-Actor-Role header")
    actor_id = request.headers.get("X-Actor-Id", type=int)
    return role, actor_id


def require_role(*roles):
    """Reject the request unless the caller holds one of `roles`."""
    def decorator(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            role, actor_id = current_actor()
            if role not in roles:
                raise NotAuthorizedError(f"Role '{role}' cannot access this endpoint", role=role)
            g.actor_role, g.actor_id = role, actor_id
            return view(*args, **kwargs)
        return wrapper
    return decorator
