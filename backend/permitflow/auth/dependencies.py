"""
Authentication dependencies for API endpoints.
"""

import jwt
from jwt.exceptions import InvalidTokenError, ExpiredSignatureError
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import ValidationError as PydanticValidationError

from ..core.config import settings
from ..core.errors import AuthorizationError
from ..core.logging_config import set_request_context
from .principal import AuthenticatedPrincipal, MunicipalRole, BUILDING_PERMITS

# Security scheme
security = HTTPBearer(auto_error=False)


def decode_principal(token: str) -> AuthenticatedPrincipal:
    """Verify a bearer token and build the principal from its claims"""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except InvalidTokenError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return AuthenticatedPrincipal(
            user_id=str(user_id),
            name=payload.get("name"),
            email=payload.get("email"),
            global_role=payload.get("global_role", "citizen"),
            contractor_id=payload.get("contractor_id"),
            municipal_permissions=payload.get("municipal_permissions", []),
        )
    except PydanticValidationError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def get_principal(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> AuthenticatedPrincipal:
    """Authenticated caller for the current request"""
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    principal = decode_principal(credentials.credentials)
    set_request_context(user_id=principal.user_id)
    return principal


async def get_municipal_staff(
    municipality_id: str,
    principal: AuthenticatedPrincipal = Depends(get_principal)
) -> AuthenticatedPrincipal:
    """Caller must be staff of the municipality in the path"""
    set_request_context(municipality_id=municipality_id)
    if not principal.is_staff_for(municipality_id):
        raise AuthorizationError("Access denied")
    return principal


def require_module_permission(action: str):
    """Dependency factory: staff with a building-permits module action"""
    async def permission_dependency(
        municipality_id: str,
        principal: AuthenticatedPrincipal = Depends(get_municipal_staff)
    ) -> AuthenticatedPrincipal:
        if not principal.has_module_permission(municipality_id, BUILDING_PERMITS, action):
            raise AuthorizationError(f"Permission required: {BUILDING_PERMITS}.{action}")
        return principal
    return permission_dependency


async def require_fee_admin(
    municipality_id: str,
    principal: AuthenticatedPrincipal = Depends(get_municipal_staff)
) -> AuthenticatedPrincipal:
    """Fee schedules are managed by municipality admins and managers"""
    if not principal.has_role(municipality_id, MunicipalRole.ADMIN, MunicipalRole.MANAGER):
        raise AuthorizationError("Only municipality admins and managers can manage fee schedules")
    return principal


async def require_platform_staff(
    principal: AuthenticatedPrincipal = Depends(get_principal)
) -> AuthenticatedPrincipal:
    if not principal.is_platform_staff:
        raise AuthorizationError("Platform staff access required")
    return principal
