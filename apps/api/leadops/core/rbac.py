from collections.abc import Callable

from fastapi import Depends, HTTPException, status

from leadops.core.auth import AuthUser, get_current_user


def require_permissions(*permissions: str) -> Callable[..., AuthUser]:
    """Dependency that lets the request through only when every permission is granted."""

    async def checker(user: AuthUser = Depends(get_current_user)) -> AuthUser:
        missing = [permission for permission in permissions if not user.has_permission(permission)]
        if missing:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permissions: {', '.join(missing)}",
            )
        return user

    return checker
