from dataclasses import dataclass

from jose import JWTError, jwt
from starlette.requests import Request

from leadops.core.config import get_settings


# Team roles map onto the operator permissions checked by the API; a role may also be a permission itself.
ROLE_PERMISSIONS: dict[str, frozenset[str]] = {
    "sdr": frozenset({"leads.commitments.manage"}),
    "sdr_manager": frozenset({"leads.commitments.manage", "leads.sequences.manage"}),
    "ops_admin": frozenset({"leads.commitments.manage", "leads.sequences.manage", "system.metrics.read"}),
}


@dataclass
class AuthUser:
    sub: str
    roles: list[str]

    def has_permission(self, permission: str) -> bool:
        if permission in self.roles:
            return True
        return any(permission in ROLE_PERMISSIONS.get(role, frozenset()) for role in self.roles)


ANONYMOUS = AuthUser(sub="anonymous", roles=["guest"])


async def get_current_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.removeprefix("Bearer ").strip() if auth_header.startswith("Bearer ") else ""
    if not token:
        return ANONYMOUS

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return ANONYMOUS

    roles = payload.get("roles")
    if not isinstance(roles, list):
        roles = []
    user = AuthUser(sub=str(payload.get("sub", "anonymous")), roles=[str(role) for role in roles])
    request.state.user_sub = user.sub
    return user
