"""
Rate limiter shared by the application and the routes that opt in.
"""
from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request


def get_rate_limit_key(request: Request) -> str:
    """
    Key requests by authenticated principal, falling back to client address.
    Used with slowapi Limiter.
    """
    auth = getattr(request.state, "auth", None)
    if auth is not None and auth.principal_id:
        return f"principal:{auth.principal_id}"
    return get_remote_address(request) or "anonymous"


limiter = Limiter(key_func=get_rate_limit_key)
