"""
Bearer Token Authentication

Resolves a bearer credential to an agent or administrator identity. Token
issuance here exists for tooling and tests; production tokens come from the
identity service that shares the signing secret.
"""

import jwt
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from .exceptions import UnauthorizedError, InvalidTokenError


class Role(Enum):
    AGENT = "agent"
    ADMIN = "admin"


@dataclass(frozen=True)
class Identity:
    subject_id: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


class TokenAuthenticator:

    def __init__(self, secret: str, algorithm: str = "HS256", expiry_hours: int = 168):
        self.secret = secret
        self.algorithm = algorithm
        self.expiry_hours = expiry_hours

    def issue(self, subject_id: str, role: Role = Role.AGENT,
              expires_in: Optional[timedelta] = None) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": subject_id,
            "role": Role(role).value,
            "iat": now,
            "exp": now + (expires_in if expires_in is not None else timedelta(hours=self.expiry_hours))
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def resolve(self, token: Optional[str]) -> Identity:
        """
        Resolve a bearer token to an identity

        Raises:
            UnauthorizedError: No token presented
            InvalidTokenError: Expired, badly signed or malformed token
        """
        if not token:
            raise UnauthorizedError("Not authenticated")

        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            raise InvalidTokenError("Token expired")
        except jwt.InvalidTokenError:
            raise InvalidTokenError("Invalid token")

        subject_id = payload.get("sub")
        if not subject_id:
            raise InvalidTokenError("Invalid token")
        try:
            role = Role(payload.get("role", Role.AGENT.value))
        except ValueError:
            raise InvalidTokenError("Invalid token role")

        return Identity(subject_id=subject_id, role=role)
