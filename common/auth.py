from typing import Any, Dict

import jwt
from fastapi import Header, HTTPException, status

from .secrets import get_secret

ADMIN_ROLES = frozenset({"admin", "super_admin"})


def require_admin(authorization: str | None = Header(None)) -> Dict[str, Any]:
    """Validate an operator Bearer token (admin JWT or static per-user token).

    JWTs must carry a ``role`` claim in :data:`ADMIN_ROLES`. Static tokens from
    the ``API_TOKENS`` secret are operator credentials by construction.
    """

    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized"
        )
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")

    if token.count(".") == 2:
        secret = get_secret("JWT_SECRET")
        if not secret:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden"
            )
        try:
            payload = jwt.decode(token, secret, algorithms=["HS256"])
        except jwt.PyJWTError as exc:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden"
            ) from exc
        if payload.get("role") not in ADMIN_ROLES:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required"
            )
        return payload

    tokens = get_secret("API_TOKENS", {})
    if not isinstance(tokens, dict):
        tokens = {}
    for user, expected in tokens.items():
        if token == expected:
            return {"sub": user, "role": "admin"}
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
