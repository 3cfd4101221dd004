"""
Builders for principals, tokens and seed documents shared by the tests.
"""

from datetime import datetime, timedelta
from typing import Dict, List, Optional
import jwt

from permitflow.auth.principal import (
    AuthenticatedPrincipal,
    GlobalRole,
    MunicipalPermission,
    MunicipalRole,
)
from permitflow.core.config import settings
from permitflow.models.fee_schedule import FeeConfiguration, FeeSchedule, FeeTier, CalculationType
from permitflow.models.inspection_settings import InspectionSettings, InspectorProfile, TimeWindow
from permitflow.models.permit import Applicant, Permit, PermitStatus
from permitflow.models.permit_type import (
    DepartmentReviewConfig,
    InspectionType,
    PermitKind,
    PermitType,
    PermitTypeInspectionSettings,
    RequiredInspection,
)
from permitflow.schemas.permit import PermitCreate
from permitflow.services.permit_service import permit_service

MUNICIPALITY_ID = "springfield"
OTHER_MUNICIPALITY_ID = "shelbyville"


def municipal_principal(
    role: MunicipalRole = MunicipalRole.ADMIN,
    user_id: str = "staff-admin",
    department: Optional[str] = None,
    module_permissions: Optional[Dict[str, List[str]]] = None,
    municipality_id: str = MUNICIPALITY_ID
) -> AuthenticatedPrincipal:
    return AuthenticatedPrincipal(
        user_id=user_id,
        name=f"{role.value.title()} {user_id}",
        email=f"{user_id}@springfield.gov",
        global_role=GlobalRole.MUNICIPAL_USER,
        municipal_permissions=[MunicipalPermission(
            municipality_id=municipality_id,
            role=role,
            department=department,
            module_permissions=module_permissions or {},
        )],
    )


def applicant_principal(user_id: str = "citizen-1", contractor_id: Optional[str] = None) -> AuthenticatedPrincipal:
    return AuthenticatedPrincipal(
        user_id=user_id,
        name=f"Applicant {user_id}",
        email=f"{user_id}@example.com",
        global_role=GlobalRole.CONTRACTOR if contractor_id else GlobalRole.CITIZEN,
        contractor_id=contractor_id,
    )


def platform_principal(user_id: str = "avitar-ops") -> AuthenticatedPrincipal:
    return AuthenticatedPrincipal(user_id=user_id, name="Platform Ops", global_role=GlobalRole.AVITAR_ADMIN)


def token_for(principal: AuthenticatedPrincipal, expires_in: timedelta = timedelta(hours=1)) -> str:
    claims = {
        "sub": principal.user_id,
        "name": principal.name,
        "email": principal.email,
        "global_role": principal.global_role.value,
        "contractor_id": principal.contractor_id,
        "municipal_permissions": [p.model_dump(mode="json") for p in principal.municipal_permissions],
        "exp": datetime.utcnow() + expires_in,
    }
    return jwt.encode(claims, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def auth_headers(principal: AuthenticatedPrincipal) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token_for(principal)}"}


def tiered_configuration() -> FeeConfiguration:
    """$25 plus 1% of the first $10k and $50 + 2% above it"""
    return FeeConfiguration(
        calculation_type=CalculationType.TIERED,
        base_amount=25,
        tiers=[
            FeeTier(min_value=0, max_value=10000, rate=0.01, flat_amount=0),
            FeeTier(min_value=10000, max_value=None, rate=0.02, flat_amount=50),
        ],
    )


async def create_permit_type(
    name: str = "Residential Addition",
    departments: tuple = ("building", "zoning", "fire"),
    required_inspections: Optional[List[RequiredInspection]] = None,
    kind: PermitKind = PermitKind.BUILDING,
    municipality_id: str = MUNICIPALITY_ID
) -> PermitType:
    permit_type = PermitType(
        municipality_id=municipality_id,
        name=name,
        type=kind,
        categories=["residential"],
        department_reviews=[
            DepartmentReviewConfig(department_name=dept, review_order=i, reviewer_ids=[f"{dept}-reviewer"])
            for i, dept in enumerate(departments)
        ],
        inspection_settings=PermitTypeInspectionSettings(
            required_inspections=required_inspections if required_inspections is not None else [
                RequiredInspection(type=InspectionType.FOUNDATION, buffer_days=2, estimated_minutes=60),
            ]
        ),
        created_by="staff-admin",
    )
    await permit_type.insert()
    return permit_type


async def create_active_schedule(permit_type: PermitType, configuration: Optional[FeeConfiguration] = None,
                                 user_id: str = "staff-admin") -> FeeSchedule:
    schedule = FeeSchedule(
        municipality_id=permit_type.municipality_id,
        permit_type_id=str(permit_type.id),
        version=await FeeSchedule.get_next_version(str(permit_type.id)),
        name=f"{permit_type.name} fees",
        created_by=user_id,
        fee_configuration=configuration or tiered_configuration(),
    )
    await schedule.insert()
    await schedule.activate(user_id)
    return schedule


async def create_permit(
    permit_type: PermitType,
    owner: Optional[AuthenticatedPrincipal] = None,
    estimated_value: float = 15000,
    **overrides
) -> Permit:
    owner = owner or applicant_principal()
    data = PermitCreate(
        permit_type_id=str(permit_type.id),
        property_address="742 Evergreen Terrace",
        applicant=Applicant(name="Homer Simpson", email="homer@example.com", phone="555-0100"),
        description="Two-storey rear addition",
        estimated_value=estimated_value,
        **overrides,
    )
    return await permit_service.create_permit(permit_type.municipality_id, data, owner)


async def approve_permit(permit: Permit, staff: Optional[AuthenticatedPrincipal] = None) -> Permit:
    """Walk a draft permit through submission and review straight to approved"""
    staff = staff or municipal_principal()
    if permit.status == PermitStatus.DRAFT:
        permit.update_status(PermitStatus.SUBMITTED, permit.created_by, notes="Submitted for test")
    permit.update_status(PermitStatus.UNDER_REVIEW, staff.user_id)
    permit.update_status(PermitStatus.APPROVED, staff.user_id, notes="Approved for test")
    await permit.save()
    return permit


async def configure_inspections(
    inspectors: Optional[List[InspectorProfile]] = None,
    municipality_id: str = MUNICIPALITY_ID
) -> InspectionSettings:
    """Every day 08:00-16:00 with hourly slots"""
    inspection_settings = InspectionSettings(
        municipality_id=municipality_id,
        available_time_slots=[
            TimeWindow(day_of_week=day, start_time="08:00", end_time="16:00", slot_duration=60)
            for day in range(7)
        ],
        inspectors=inspectors if inspectors is not None else [
            InspectorProfile(user_id="inspector-1", name="Ned Flanders", max_per_day=4),
        ],
    )
    await inspection_settings.insert()
    return inspection_settings


def days_from_now_at(days: int, hour: int = 10) -> datetime:
    moment = datetime.utcnow() + timedelta(days=days)
    return moment.replace(hour=hour, minute=0, second=0, microsecond=0)
