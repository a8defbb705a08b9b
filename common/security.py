import time, jwt
from dataclasses import dataclass
from typing import Dict, Optional
from common.error_handling import ForbiddenError
from common.settings import settings

ALGO = "HS256"

ROLE_USER = "user"
ROLE_SELLER = "seller"
ROLE_ADMIN = "admin"

@dataclass(frozen=True)
class Caller:
    """Authenticated identity the core operations authorize against"""
    user_id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

def require_role(caller: Caller, *roles: str, message: Optional[str] = None) -> None:
    """Single capability check used by every role-gated operation"""
    if caller.role not in roles:
        raise ForbiddenError(
            message or "Access denied",
            context={"required_roles": list(roles), "role": caller.role},
        )

def mint_user_jwt(sub: str, claims: Optional[Dict] = None) -> str:
    now = int(time.time())
    payload = {
        "iss": settings.jwt_issuer,
        "sub": sub,
        "iat": now,
        "exp": now + settings.jwt_ttl_seconds,
        **(claims or {}),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=ALGO)

def verify_token(token: str, audience: Optional[str] = None) -> Dict:
    options = {"require": ["exp", "iat", "iss", "sub"]}
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[ALGO],
        audience=audience,
        options=options,
        issuer=settings.jwt_issuer,
    )
