# hotelpos/security.py
"""
Identità firmate dal provider esterno: JWT con claim `sub` (user id) e `role`.
Qui si verifica soltanto; l'emissione serve a seed e test.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Annotated, Optional

from fastapi import Depends, Request
from jose import JWTError, jwt

from .config import AuthConfig
from .errors import ForbiddenError, UnauthorizedError
from .models import utcnow
from .roles import Capability, Role, can, parse_role


@dataclass(frozen=True)
class Identity:
    user_id: int
    role: Role

    def require(self, capability: Capability) -> None:
        if not can(self.role, capability):
            raise ForbiddenError(f"Role '{self.role.value}' cannot {capability.value.replace('_', ' ')}")


def create_access_token(auth: AuthConfig, user_id: int, role: str, expires_minutes: int = 60 * 12) -> str:
    claims = {
        "sub": str(user_id),
        "role": role,
        "exp": utcnow() + timedelta(minutes=expires_minutes),
    }
    return jwt.encode(claims, auth.jwt_secret, algorithm=auth.jwt_algorithm)


def decode_token(auth: AuthConfig, token: str) -> Identity:
    try:
        claims = jwt.decode(token, auth.jwt_secret, algorithms=[auth.jwt_algorithm])
    except JWTError as exc:
        raise UnauthorizedError(f"Invalid or expired token: {exc}")
    try:
        return Identity(user_id=int(claims["sub"]), role=parse_role(claims.get("role", "")))
    except (KeyError, TypeError, ValueError):
        raise UnauthorizedError("Token is missing a valid subject or role")


def identity_from_token(auth: AuthConfig, token: Optional[str]) -> Optional[Identity]:
    """Variante tollerante per il websocket: token assente/invalido -> anonimo."""
    if not token:
        return None
    try:
        return decode_token(auth, token)
    except UnauthorizedError:
        return None


def get_identity(request: Request) -> Identity:
    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        raise UnauthorizedError("Missing or invalid Authorization header. Expected: Bearer <token>")
    return decode_token(request.app.state.config.auth, header.split(" ", 1)[1])


# Dipendenza tipizzata
IdentityDep = Annotated[Identity, Depends(get_identity)]
