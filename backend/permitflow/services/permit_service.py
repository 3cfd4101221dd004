"""
Permit lifecycle: creation, edits, status changes, projects and payments.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from ..auth.principal import AuthenticatedPrincipal, BUILDING_PERMITS, ModuleAction
from ..core.config import settings
from ..core.errors import (
    AuthorizationError,
    NotFoundError,
    StateError,
    ValidationError,
    conflict_from_duplicate,
)
from ..core.logging_config import get_permit_logger, set_request_context
from ..models.common import ACTIVE, parse_object_id
from ..models.counter import PermitCounter
from ..models.fee_schedule import AdditionalFeeType
from ..models.payment_account import PaymentAccount
from ..models.permit import (
    Applicant,
    DepartmentReview,
    FeeLineType,
    Permit,
    PermitFee,
    PermitStatus,
    PERMIT_NUMBER_PREFIXES,
    SLA,
    StatusHistoryEntry,
    TERMINAL_STATUSES,
)
from ..models.permit_type import PermitType
from ..schemas.permit import (
    PaymentBreakdownResponse,
    PaymentIntentResponse,
    PermitCreate,
    PermitUpdate,
    ProjectCreate,
)
from .fee_schedule_service import fee_schedule_service
from .notification_service import notification_service
from .payment_service import PaymentGatewayError, calculate_payment_breakdown, stripe_gateway

logger = get_permit_logger(__name__)

DEFAULT_PREFIX = "PER"
PROJECT_PREFIX = "PRJ"

# Child statuses counted as done when computing project progress
COMPLETED_STATUSES = {PermitStatus.APPROVED, PermitStatus.CLOSED}

FEE_LINE_TYPES = {
    AdditionalFeeType.PLAN_REVIEW: FeeLineType.PLAN_REVIEW,
    AdditionalFeeType.INSPECTION: FeeLineType.INSPECTION,
    AdditionalFeeType.REINSPECTION: FeeLineType.REINSPECTION,
    AdditionalFeeType.EXPEDITE: FeeLineType.EXPEDITE,
}


def format_permit_number(year: int, prefix: str, seq: int) -> str:
    return f"{year}-{prefix}-{seq:06d}"


def fee_lines_from_quote(permit_type_name: str, quote: Optional[Dict[str, Any]]) -> List[PermitFee]:
    """Permit fee line items from a fee schedule quote; optional fees are left for staff to add"""
    if not quote:
        return []
    calculation = quote["calculation"]
    fees = []
    if calculation["base_fee"] > 0:
        fees.append(PermitFee(
            type=FeeLineType.BASE,
            description=f"{permit_type_name} - Base Fee",
            amount=calculation["base_fee"],
        ))
    for extra in calculation["additional_fees"]:
        if extra["is_optional"] or extra["amount"] <= 0:
            continue
        fees.append(PermitFee(
            type=FEE_LINE_TYPES.get(extra["type"], FeeLineType.OTHER),
            description=extra["name"],
            amount=extra["amount"],
        ))
    return fees


def completed_delta(old: Optional[PermitStatus], new: Optional[PermitStatus]) -> int:
    return int(new in COMPLETED_STATUSES) - int(old in COMPLETED_STATUSES)


class PermitService:
    """Permit operations shared by the permit and project endpoints"""

    def __init__(self, gateway=None):
        self.gateway = gateway or stripe_gateway

    # Lookup and access

    async def get_permit(self, municipality_id: str, permit_id: str, principal: AuthenticatedPrincipal) -> Permit:
        """Load a permit the caller may see: municipality staff, or the permit's owner"""
        permit = await Permit.find_one({
            "_id": parse_object_id(permit_id, "Permit"),
            "municipality_id": municipality_id,
            **ACTIVE,
        })
        if not permit:
            raise NotFoundError("Permit not found")
        if not (principal.is_staff_for(municipality_id)
                or permit.is_owned_by(principal.user_id, principal.contractor_id)):
            raise AuthorizationError()
        set_request_context(permit_id=str(permit.id))
        permit.refresh_sla()
        return permit

    async def list_permits(
        self,
        municipality_id: str,
        principal: AuthenticatedPrincipal,
        status: Optional[PermitStatus] = None,
        permit_type: Optional[str] = None,
        project_id: Optional[str] = None,
        page: int = 1,
        page_size: int = 20
    ) -> Tuple[List[Permit], int]:
        query: Dict[str, Any] = {"municipality_id": municipality_id, **ACTIVE}
        if not principal.is_staff_for(municipality_id):
            if not principal.is_contractor_or_citizen:
                raise AuthorizationError("Access denied")
            owners = [{"submitted_by": principal.user_id}, {"created_by": principal.user_id}]
            if principal.contractor_id:
                owners.append({"contractor_id": principal.contractor_id})
            query["$or"] = owners

        if status:
            query["status"] = PermitStatus(status).value
        if permit_type:
            query["type"] = permit_type
        if project_id:
            query["project_id"] = project_id

        total = await Permit.find(query).count()
        permits = await Permit.find(query).sort([("created_at", -1)]).skip(
            (page - 1) * page_size
        ).limit(page_size).to_list()
        for permit in permits:
            permit.refresh_sla()
        return permits, total

    def _ensure_can_apply(self, municipality_id: str, principal: AuthenticatedPrincipal):
        if principal.is_staff_for(municipality_id):
            if not principal.has_module_permission(municipality_id, BUILDING_PERMITS, ModuleAction.CREATE.value):
                raise AuthorizationError(f"Permission required: {BUILDING_PERMITS}.create")
        elif not principal.is_contractor_or_citizen:
            raise AuthorizationError("Access denied")

    def _ensure_can_edit(self, permit: Permit, principal: AuthenticatedPrincipal, verb: str,
                         action: ModuleAction = ModuleAction.UPDATE):
        """Staff edit any live permit; owners only their own drafts"""
        if principal.is_staff_for(permit.municipality_id):
            if not principal.has_module_permission(permit.municipality_id, BUILDING_PERMITS, action.value):
                raise AuthorizationError(f"Permission required: {BUILDING_PERMITS}.{action.value}")
            if action == ModuleAction.UPDATE and permit.status in TERMINAL_STATUSES:
                raise StateError(f"Cannot modify a {permit.status.value} permit")
            return
        if not permit.is_owned_by(principal.user_id, principal.contractor_id):
            raise AuthorizationError()
        if permit.status != PermitStatus.DRAFT:
            raise StateError(f"Only draft permits can be {verb}")

    def _ensure_applicant(self, permit: Permit, principal: AuthenticatedPrincipal):
        if not permit.is_owned_by(principal.user_id, principal.contractor_id):
            raise AuthorizationError("Only the permit applicant can pay for this permit")

    # Creation

    async def generate_permit_number(self, municipality_id: str, kind: str, prefix: str) -> str:
        year = datetime.utcnow().year
        seq = await PermitCounter.next_value(f"{municipality_id}:{kind}:{year}")
        return format_permit_number(year, prefix, seq)

    async def _build_permit(
        self,
        municipality_id: str,
        permit_type: PermitType,
        principal: AuthenticatedPrincipal,
        attrs: Dict[str, Any],
        custom_fields: Dict[str, Any],
        project_id: Optional[str] = None
    ) -> Permit:
        """Unsaved draft permit with number, fees, fee snapshot and department reviews"""
        permit_data = dict(custom_fields)
        permit_data.update({
            "estimated_value": attrs.get("estimated_value", 0),
            "square_footage": attrs.get("square_footage", 0),
            "units": attrs.get("units"),
        })
        quote = await fee_schedule_service.quote_for_permit(str(permit_type.id), permit_data)
        prefix = PERMIT_NUMBER_PREFIXES.get(permit_type.type, DEFAULT_PREFIX)

        return Permit(
            municipality_id=municipality_id,
            permit_number=await self.generate_permit_number(municipality_id, permit_type.type.value, prefix),
            permit_type_id=str(permit_type.id),
            type=permit_type.type,
            custom_fields=custom_fields,
            fees=fee_lines_from_quote(permit_type.name, quote),
            fee_schedule_snapshot=quote,
            department_reviews=[
                DepartmentReview(
                    department=dept.department_name,
                    required=dept.is_required,
                    review_order=dept.review_order,
                )
                for dept in permit_type.department_reviews
            ],
            sla=SLA(target_review_days=settings.DEFAULT_TARGET_REVIEW_DAYS),
            project_id=project_id,
            created_by=principal.user_id,
            status_history=[StatusHistoryEntry(
                status=PermitStatus.DRAFT,
                changed_by=principal.user_id,
                changed_by_name=principal.display_name,
                notes="Permit created",
            )],
            **attrs,
        )

    async def _insert(self, permit: Permit) -> Permit:
        try:
            await permit.insert()
        except DuplicateKeyError as e:
            raise conflict_from_duplicate(e, f"Permit number {permit.permit_number}")
        return permit

    async def create_permit(self, municipality_id: str, data: PermitCreate,
                            principal: AuthenticatedPrincipal) -> Permit:
        self._ensure_can_apply(municipality_id, principal)
        permit_type = await PermitType.get_for_municipality(municipality_id, data.permit_type_id)
        try:
            custom_fields = permit_type.validate_custom_fields(data.custom_fields)
        except ValueError as e:
            raise ValidationError(str(e))

        initial_status = data.status or PermitStatus.DRAFT
        if initial_status not in (PermitStatus.DRAFT, PermitStatus.SUBMITTED):
            raise ValidationError("Permits can only be created as draft or submitted")
        if initial_status == PermitStatus.SUBMITTED and not principal.is_staff_for(municipality_id):
            raise ValidationError("Applicants must create a draft and submit it once fees are paid")

        project = None
        if data.project_id:
            project = await self._get_project(municipality_id, data.project_id)

        attrs = data.dict(exclude={"permit_type_id", "custom_fields", "project_id", "status", "applicant"})
        attrs["applicant"] = data.applicant
        if principal.contractor_id and not attrs.get("contractor_id"):
            attrs["contractor_id"] = principal.contractor_id

        permit = await self._build_permit(municipality_id, permit_type, principal, attrs, custom_fields,
                                          project_id=str(project.id) if project else None)
        if initial_status == PermitStatus.SUBMITTED:
            permit.update_status(PermitStatus.SUBMITTED, principal.user_id,
                                 notes="Submitted at creation", user_name=principal.display_name)
        await self._insert(permit)

        logger.info("Permit created", permit_id=str(permit.id), permit_number=permit.permit_number,
                    permit_status=permit.status.value)

        if project:
            await self._attach_child(str(project.id), permit)
        if permit.status == PermitStatus.SUBMITTED:
            await self.notify_reviewers(permit, permit_type)
        return permit

    async def create_project(
        self,
        municipality_id: str,
        data: ProjectCreate,
        principal: AuthenticatedPrincipal
    ) -> Tuple[Permit, List[Permit], float]:
        """Create a project permit and one draft child permit per requested permit type"""
        self._ensure_can_apply(municipality_id, principal)
        project_type = await PermitType.get_for_municipality(municipality_id, data.permit_type_id)
        child_types = [
            await PermitType.get_for_municipality(municipality_id, type_id)
            for type_id in data.child_permit_type_ids
        ]

        project_name = data.project_name or f"Project - {data.property_address or project_type.name}"
        project = Permit(
            municipality_id=municipality_id,
            permit_number=await self.generate_permit_number(municipality_id, "project", PROJECT_PREFIX),
            permit_type_id=str(project_type.id),
            type=project_type.type,
            is_project=True,
            project_name=project_name,
            description=data.description or project_name,
            property_id=data.property_id,
            property_address=data.property_address,
            applicant=data.applicant,
            contractor_id=data.contractor_id or principal.contractor_id,
            estimated_value=data.estimated_value,
            created_by=principal.user_id,
            status_history=[StatusHistoryEntry(
                status=PermitStatus.DRAFT,
                changed_by=principal.user_id,
                changed_by_name=principal.display_name,
                notes="Project created",
            )],
        )
        await self._insert(project)

        children = []
        total_project_fee = 0.0
        for child_type in child_types:
            child = await self._build_permit(
                municipality_id,
                child_type,
                principal,
                {
                    "property_id": data.property_id,
                    "property_address": data.property_address,
                    "applicant": data.applicant,
                    "contractor_id": project.contractor_id,
                    "description": f"{child_type.name} - Part of {project_name}",
                },
                {},
                project_id=str(project.id),
            )
            await self._insert(child)
            await self._attach_child(str(project.id), child)
            children.append(child)
            total_project_fee += child.total_fees

        logger.info("Project created", permit_id=str(project.id), permit_number=project.permit_number,
                    children=len(children))
        project = await Permit.get(project.id)
        return project, children, round(total_project_fee, 2)

    # Project aggregates

    async def _get_project(self, municipality_id: str, project_id: str) -> Permit:
        project = await Permit.find_one({
            "_id": parse_object_id(project_id, "Project"),
            "municipality_id": municipality_id,
            "is_project": True,
            **ACTIVE,
        })
        if not project:
            raise NotFoundError("Project not found")
        return project

    async def _update_project_stats(self, project_id: str, update: Dict[str, Any]):
        """Apply an atomic stats delta, then recompute progress from the updated document"""
        update.setdefault("$set", {})["project_stats.last_child_update"] = datetime.utcnow()
        collection = Permit.get_pymongo_collection()
        document = await collection.find_one_and_update(
            {"_id": parse_object_id(project_id, "Project")},
            update,
            return_document=ReturnDocument.AFTER,
        )
        if document is None:
            logger.warning("Project missing while updating child stats", project_id=project_id)
            return

        stats = document.get("project_stats", {})
        total = stats.get("total_children", 0)
        progress = round(stats.get("completed_children", 0) / total * 100, 1) if total else 0
        await collection.update_one(
            {"_id": document["_id"]},
            {"$set": {"project_stats.overall_progress": progress}}
        )

    async def _attach_child(self, project_id: str, child: Permit):
        inc = {
            "project_stats.total_children": 1,
            f"project_stats.children_by_status.{child.status.value}": 1,
            "project_stats.total_project_value": child.estimated_value,
        }
        if completed_delta(None, child.status):
            inc["project_stats.completed_children"] = 1
        await self._update_project_stats(project_id, {
            "$inc": inc,
            "$addToSet": {"child_permits": str(child.id)},
        })

    async def _detach_child(self, project_id: str, child: Permit):
        inc = {
            "project_stats.total_children": -1,
            f"project_stats.children_by_status.{child.status.value}": -1,
            "project_stats.total_project_value": -child.estimated_value,
        }
        if completed_delta(child.status, None):
            inc["project_stats.completed_children"] = -1
        await self._update_project_stats(project_id, {
            "$inc": inc,
            "$pull": {"child_permits": str(child.id)},
        })

    async def _apply_child_transition(self, project_id: str, old: PermitStatus, new: PermitStatus):
        if old == new:
            return
        inc = {
            f"project_stats.children_by_status.{old.value}": -1,
            f"project_stats.children_by_status.{new.value}": 1,
        }
        delta = completed_delta(old, new)
        if delta:
            inc["project_stats.completed_children"] = delta
        await self._update_project_stats(project_id, {"$inc": inc})

    # Edits

    async def update_permit(self, permit: Permit, data: PermitUpdate,
                            principal: AuthenticatedPrincipal) -> Permit:
        self._ensure_can_edit(permit, principal, "updated")
        changes = data.dict(exclude_unset=True)

        if changes.get("custom_fields") is not None:
            permit_type = await PermitType.get(parse_object_id(permit.permit_type_id, "Permit type"))
            if permit_type:
                try:
                    changes["custom_fields"] = permit_type.validate_custom_fields(changes["custom_fields"])
                except ValueError as e:
                    raise ValidationError(str(e))
        if changes.get("applicant") is not None:
            changes["applicant"] = Applicant(**changes["applicant"])

        value_delta = 0.0
        for field, value in changes.items():
            if value is None and field in ("applicant", "custom_fields", "estimated_value", "square_footage"):
                continue
            if field == "estimated_value":
                value_delta = value - permit.estimated_value
            setattr(permit, field, value)
        permit.updated_at = datetime.utcnow()
        await permit.save()

        if permit.project_id and value_delta:
            await self._update_project_stats(permit.project_id, {
                "$inc": {"project_stats.total_project_value": value_delta}
            })
        return permit

    async def delete_permit(self, permit: Permit, principal: AuthenticatedPrincipal):
        self._ensure_can_edit(permit, principal, "deleted", action=ModuleAction.DELETE)
        permit.lifecycle.soft_delete(principal.user_id)
        permit.updated_at = datetime.utcnow()
        await permit.save()
        if permit.project_id:
            await self._detach_child(permit.project_id, permit)
        logger.info("Permit deleted", permit_id=str(permit.id), permit_number=permit.permit_number)

    async def record_view(self, permit: Permit, principal: AuthenticatedPrincipal) -> Permit:
        permit.mark_viewed(principal.user_id)
        await permit.save()
        return permit

    async def add_note(self, permit: Permit, principal: AuthenticatedPrincipal, content: str) -> Permit:
        if not principal.is_staff_for(permit.municipality_id):
            raise AuthorizationError("Only municipal staff can add internal notes")
        permit.add_internal_note(principal.user_id, content, principal.display_name)
        await permit.save()
        return permit

    # Status

    async def change_status(
        self,
        permit: Permit,
        new_status: PermitStatus,
        principal: AuthenticatedPrincipal,
        notes: Optional[str] = None
    ) -> Permit:
        new_status = PermitStatus(new_status)
        municipality_id = permit.municipality_id
        is_staff = principal.is_staff_for(municipality_id)

        if is_staff:
            action = ModuleAction.APPROVE if new_status in (PermitStatus.APPROVED, PermitStatus.DENIED) \
                else ModuleAction.UPDATE
            if not principal.has_module_permission(municipality_id, BUILDING_PERMITS, action.value):
                raise AuthorizationError(f"Permission required: {BUILDING_PERMITS}.{action.value}")
        else:
            if not permit.is_owned_by(principal.user_id, principal.contractor_id):
                raise AuthorizationError()
            if new_status not in (PermitStatus.SUBMITTED, PermitStatus.CANCELLED):
                raise AuthorizationError("Applicants can only submit or cancel their permits")

        if new_status == PermitStatus.SUBMITTED and permit.status == PermitStatus.DRAFT:
            await self._check_ready_for_submission(permit, is_staff)

        previous = permit.status
        permit.update_status(new_status, principal.user_id, notes=notes, user_name=principal.display_name)
        await permit.save()

        logger.info(f"Permit status changed from {previous.value} to {new_status.value}",
                    permit_id=str(permit.id), permit_number=permit.permit_number)
        await self.after_status_change(permit, previous)
        return permit

    async def _check_ready_for_submission(self, permit: Permit, is_staff: bool):
        permit_type = await PermitType.get(parse_object_id(permit.permit_type_id, "Permit type"))
        if permit_type:
            try:
                permit_type.validate_custom_fields(permit.custom_fields)
            except ValueError as e:
                raise ValidationError(str(e))
        if (
            not is_staff
            and settings.REQUIRE_PAYMENT_BEFORE_SUBMISSION
            and permit.total_fees > 0
            and not permit.is_fully_paid
        ):
            raise ValidationError("Permit fees must be paid before the permit can be submitted")

    async def after_status_change(self, permit: Permit, previous: PermitStatus):
        """Side effects of a committed status change: project stats and notifications"""
        if permit.project_id:
            await self._apply_child_transition(permit.project_id, previous, permit.status)

        if permit.status == PermitStatus.SUBMITTED and previous == PermitStatus.DRAFT:
            await self.notify_reviewers(permit)

        await notification_service.send_notification(
            permit.submitted_by or permit.created_by,
            "permit_status_changed",
            {
                "permit_number": permit.permit_number,
                "previous_status": previous.value,
                "status": permit.status.value,
            },
            municipality_id=permit.municipality_id,
        )

    async def notify_reviewers(self, permit: Permit, permit_type: Optional[PermitType] = None):
        if permit_type is None:
            permit_type = await PermitType.get(parse_object_id(permit.permit_type_id, "Permit type"))
            if not permit_type:
                return
        for dept in permit_type.department_reviews:
            await notification_service.send_bulk(
                dept.reviewer_ids,
                "permit_review_assignment",
                {
                    "permit_id": str(permit.id),
                    "permit_number": permit.permit_number,
                    "permit_type": permit_type.name,
                    "department": dept.department_name,
                    "property_address": permit.property_address,
                    "applicant_name": permit.applicant.name,
                },
                municipality_id=permit.municipality_id,
            )

    # Payments

    def payment_breakdown(self, permit: Permit) -> PaymentBreakdownResponse:
        breakdown = calculate_payment_breakdown(permit.unpaid_fees)
        return PaymentBreakdownResponse(
            permit_id=str(permit.id),
            permit_number=permit.permit_number,
            **breakdown.as_dollars(),
        )

    async def create_payment_intent(self, permit: Permit, principal: AuthenticatedPrincipal) -> PaymentIntentResponse:
        self._ensure_applicant(permit, principal)
        breakdown = calculate_payment_breakdown(permit.unpaid_fees)

        account = await PaymentAccount.find_one({"municipality_id": permit.municipality_id})
        if not account or not account.stripe_account_id or not account.is_setup_complete:
            raise ValidationError("Online payments are not set up for this municipality")

        try:
            intent = await self.gateway.create_payment_intent(
                amount_cents=breakdown.total_amount_cents,
                destination_account=account.stripe_account_id,
                transfer_cents=breakdown.permit_fee_cents,
                description=f"Permit {permit.permit_number}",
                metadata={
                    "permit_id": str(permit.id),
                    "permit_number": permit.permit_number,
                    "municipality_id": permit.municipality_id,
                },
            )
        except PaymentGatewayError as e:
            logger.error(f"Payment intent creation failed: {e}", permit_id=str(permit.id))
            raise ValidationError(f"Payment processor error: {e}")

        permit.add_internal_note(principal.user_id, f"Payment intent created: {intent['id']}",
                                 principal.display_name)
        await permit.save()

        return PaymentIntentResponse(
            payment_intent_id=intent["id"],
            client_secret=intent.get("client_secret"),
            breakdown=PaymentBreakdownResponse(
                permit_id=str(permit.id),
                permit_number=permit.permit_number,
                **breakdown.as_dollars(),
            ),
        )

    async def confirm_payment(
        self,
        permit: Permit,
        principal: AuthenticatedPrincipal,
        payment_intent_id: str
    ) -> Tuple[Permit, bool]:
        """
        Mark fees paid once the processor reports the intent succeeded.

        A draft permit is submitted as part of the confirmation.

        Returns:
            The permit and whether it was submitted by this call
        """
        self._ensure_applicant(permit, principal)
        try:
            intent = await self.gateway.retrieve_payment_intent(payment_intent_id)
        except PaymentGatewayError as e:
            raise ValidationError(f"Payment processor error: {e}")

        if intent.get("status") != "succeeded":
            raise ValidationError("Payment has not been completed yet", payment_status=intent.get("status"))
        intent_permit = (intent.get("metadata") or {}).get("permit_id")
        if intent_permit and intent_permit != str(permit.id):
            raise ValidationError("Payment does not belong to this permit")

        now = datetime.utcnow()
        for fee in permit.fees:
            if fee.paid or fee.refunded:
                continue
            fee.paid = True
            fee.paid_date = now
            fee.paid_amount = fee.amount
            fee.payment_method = "stripe"
            fee.receipt_number = intent["id"]

        total = intent.get("amount", 0) / 100
        permit.add_internal_note(
            principal.user_id,
            f"Payment confirmed via Stripe. Payment Intent: {payment_intent_id}. Total: ${total:.2f}",
            principal.display_name,
        )

        previous = permit.status
        submitted = previous == PermitStatus.DRAFT
        if submitted:
            permit.update_status(PermitStatus.SUBMITTED, principal.user_id,
                                 notes="Permit submitted with payment", user_name=principal.display_name)
        await permit.save()

        logger.info("Permit payment confirmed", permit_id=str(permit.id), permit_number=permit.permit_number,
                    payment_intent=payment_intent_id)
        if submitted:
            await self.after_status_change(permit, previous)
        return permit, submitted


permit_service = PermitService()
