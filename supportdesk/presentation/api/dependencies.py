from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ...application.services.admin_auth_service import AdminAuthService
from ...core.dependencies import get_admin_auth_service

_bearer_scheme = HTTPBearer(auto_error=False)


def require_admin_user(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
    admin_service: AdminAuthService = Depends(get_admin_auth_service),
):
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token.")
    return admin_service.get_current_admin(credentials.credentials)


def require_tenant_id(x_tenant_id: str = Header(default="")) -> str:
    """Tenant resolved upstream by the authentication layer and forwarded as ``X-Tenant-ID``."""
    tenant_id = x_tenant_id.strip()
    if not tenant_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="X-Tenant-ID header is required.")
    return tenant_id
