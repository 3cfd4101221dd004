"""
The authenticated caller, passed explicitly into every service operation.
"""

from enum import Enum
from typing import Dict, List, Optional
from pydantic import BaseModel, Field


class GlobalRole(str, Enum):
    AVITAR_STAFF = "avitar_staff"
    AVITAR_ADMIN = "avitar_admin"
    MUNICIPAL_USER = "municipal_user"
    CONTRACTOR = "contractor"
    CITIZEN = "citizen"


class MunicipalRole(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    STAFF = "staff"
    INSPECTOR = "inspector"
    READONLY = "readonly"


class ModuleAction(str, Enum):
    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    APPROVE = "approve"


BUILDING_PERMITS = "building_permits"

# Default module actions granted by a municipal role when none are listed
ROLE_DEFAULT_ACTIONS: Dict[MunicipalRole, List[str]] = {
    MunicipalRole.ADMIN: [a.value for a in ModuleAction],
    MunicipalRole.MANAGER: [a.value for a in ModuleAction],
    MunicipalRole.STAFF: [ModuleAction.READ.value, ModuleAction.CREATE.value, ModuleAction.UPDATE.value],
    MunicipalRole.INSPECTOR: [ModuleAction.READ.value, ModuleAction.CREATE.value, ModuleAction.UPDATE.value],
    MunicipalRole.READONLY: [ModuleAction.READ.value],
}


class MunicipalPermission(BaseModel):
    municipality_id: str
    role: MunicipalRole = MunicipalRole.STAFF
    department: Optional[str] = None
    module_permissions: Dict[str, List[str]] = Field(default_factory=dict)


class AuthenticatedPrincipal(BaseModel):
    user_id: str
    name: Optional[str] = None
    email: Optional[str] = None
    global_role: GlobalRole = GlobalRole.CITIZEN
    contractor_id: Optional[str] = None
    municipal_permissions: List[MunicipalPermission] = Field(default_factory=list)

    @property
    def display_name(self) -> str:
        return self.name or self.email or self.user_id

    @property
    def is_platform_staff(self) -> bool:
        return self.global_role in (GlobalRole.AVITAR_STAFF, GlobalRole.AVITAR_ADMIN)

    @property
    def is_contractor_or_citizen(self) -> bool:
        return self.global_role in (GlobalRole.CONTRACTOR, GlobalRole.CITIZEN)

    def permission_for(self, municipality_id: str) -> Optional[MunicipalPermission]:
        for permission in self.municipal_permissions:
            if permission.municipality_id == municipality_id:
                return permission
        return None

    def has_access_to_municipality(self, municipality_id: str) -> bool:
        return self.is_platform_staff or self.permission_for(municipality_id) is not None

    def is_staff_for(self, municipality_id: str) -> bool:
        """Municipal staff (or platform staff) acting for this municipality"""
        if self.is_platform_staff:
            return True
        return self.global_role == GlobalRole.MUNICIPAL_USER and self.permission_for(municipality_id) is not None

    def has_role(self, municipality_id: str, *roles: MunicipalRole) -> bool:
        if self.is_platform_staff:
            return True
        permission = self.permission_for(municipality_id)
        return permission is not None and permission.role in roles

    def has_module_permission(self, municipality_id: str, module: str, action: str) -> bool:
        if self.is_platform_staff:
            return True
        permission = self.permission_for(municipality_id)
        if permission is None:
            return False
        if permission.role == MunicipalRole.ADMIN:
            return True
        actions = permission.module_permissions.get(module)
        if actions is None:
            actions = ROLE_DEFAULT_ACTIONS.get(permission.role, [])
        return action in actions

    def department_for(self, municipality_id: str) -> Optional[str]:
        permission = self.permission_for(municipality_id)
        return permission.department if permission else None
