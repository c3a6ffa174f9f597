from __future__ import annotations

import redis
from fastapi import Depends, HTTPException, Request

from cbt.connections.redis import get_redis
from cbt.services.auth import get_current_user
from cbt.models.user import User


def limit_route(seconds: int):
    """Return a FastAPI dependency that rate-limits a user on a route for N seconds.

    Uses a Redis key with a TTL to block repeated calls by the same user to
    the same path within the window.
    """

    def _dependency(
        request: Request,
        current_user: User = Depends(get_current_user),
        client: redis.Redis = Depends(get_redis),
    ) -> None:
        key = f"rl:{current_user.id}:{request.url.path}"

        # SET NX only succeeds when no window is open for this user and path
        if client.set(name=key, value="1", ex=seconds, nx=True):
            return
        ttl = client.ttl(key)
        raise HTTPException(status_code=429, detail=f"Rate limited. Try again in {max(ttl, 1)}s")

    return _dependency
