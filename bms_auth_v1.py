"""
Business Management Service (BMS) - Auth Gateway
Version: 1.0.0

Resolves the calling principal from a signed bearer token and checks its
role against the capability each endpoint requires. Account management
(signup, passwords, login) lives outside this service.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional
import hmac

from bms_enforcement_v1 import SYSTEM_SECRET, Unauthenticated, Unauthorized, logger

class Role(Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    EMPLOYEE = "employee"
    CUSTOMER = "customer"

@dataclass(frozen=True)
class Principal:
    """Authenticated caller."""
    user_id: str
    role: Role
    business_id: Optional[str] = None

class AuthGateway:
    """Issues and verifies HMAC-signed tokens of the form user:role:business.sig"""

    def __init__(self, secret: bytes = SYSTEM_SECRET):
        self._secret = secret

    def _signature(self, payload: str) -> str:
        return hmac.new(self._secret, payload.encode(), 'sha256').hexdigest()

    def issue_token(self, principal: Principal) -> str:
        if ':' in principal.user_id or (principal.business_id and ':' in principal.business_id):
            raise ValueError("user_id and business_id must not contain ':'")
        payload = f"{principal.user_id}:{principal.role.value}:{principal.business_id or ''}"
        return f"{payload}.{self._signature(payload)}"

    def resolve(self, token: Optional[str]) -> Principal:
        """Verify token and return its principal. Raises Unauthenticated."""
        if not token:
            raise Unauthenticated("Missing bearer token")

        payload, _, signature = token.rpartition('.')
        if not payload or not hmac.compare_digest(signature, self._signature(payload)):
            logger.warning("[AUTH] Rejected token with invalid signature")
            raise Unauthenticated("Invalid token")

        parts = payload.split(':')
        if len(parts) != 3 or not parts[0]:
            raise Unauthenticated("Malformed token")

        user_id, role_value, business_id = parts
        try:
            role = Role(role_value)
        except ValueError:
            raise Unauthenticated(f"Unknown role {role_value!r}")

        return Principal(user_id=user_id, role=role, business_id=business_id or None)

def require_role(principal: Principal, *roles: Role) -> Principal:
    """Capability check. Raises Unauthorized when principal.role is not allowed."""
    if principal.role not in roles:
        allowed = ", ".join(r.value for r in roles)
        logger.warning(f"[AUTH] {principal.user_id} ({principal.role.value}) denied; requires {allowed}")
        raise Unauthorized(f"Role {principal.role.value} is not allowed; requires one of: {allowed}")
    return principal
