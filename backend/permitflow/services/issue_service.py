"""
Inspection issue tracking: card linking, contractor corrections and inspector verification.
"""

import base64
import binascii
import re
from datetime import datetime
from typing import List, Optional, Tuple

from ..auth.principal import AuthenticatedPrincipal
from ..core.errors import AuthorizationError, NotFoundError, StateError, ValidationError
from ..core.logging_config import get_permit_logger
from ..models.common import ACTIVE, Photo, parse_object_id
from ..models.inspection import PermitInspection
from ..models.inspection_issue import (
    InspectionIssue,
    IssueAction,
    IssueHistoryEntry,
    IssueStatus,
)
from ..models.permit import Permit
from ..schemas.issue import IssueCreate, IssueLink, IssueUpdate
from .issue_batch_service import unique_issue_numbers
from .notification_service import notification_service
from .storage_service import StorageError, storage_service

logger = get_permit_logger(__name__)

# (bytes, filename, content_type)
UploadedPhoto = Tuple[bytes, str, Optional[str]]

_DATA_URL = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,(?P<data>.+)$", re.DOTALL)


def decode_data_url(value: str, filename: Optional[str] = None) -> UploadedPhoto:
    """Split a ``data:<mime>;base64,...`` URL into an upload"""
    match = _DATA_URL.match(value or "")
    if not match:
        raise ValidationError("Invalid base64 data format")
    try:
        data = base64.b64decode(match.group("data"), validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError("Invalid base64 data format")
    mime_type = match.group("mime")
    return data, filename or f"issue-photo.{mime_type.split('/')[1]}", mime_type


class IssueService:
    """Issues raised against inspections"""

    def _ensure_staff(self, municipality_id: str, principal: AuthenticatedPrincipal):
        if not principal.is_staff_for(municipality_id):
            raise AuthorizationError("Only municipal staff can perform this action")

    async def _permit_for(self, issue: InspectionIssue) -> Optional[Permit]:
        if not issue.permit_id:
            return None
        return await Permit.get(parse_object_id(issue.permit_id, "Permit"))

    async def get_issue(self, municipality_id: str, issue_number: str,
                        principal: AuthenticatedPrincipal) -> InspectionIssue:
        issue = await InspectionIssue.find_one({
            "issue_number": issue_number,
            "municipality_id": municipality_id,
            **ACTIVE,
        })
        if not issue:
            raise NotFoundError("Inspection issue not found")
        if principal.is_staff_for(municipality_id):
            return issue

        permit = await self._permit_for(issue)
        if not permit or not permit.is_owned_by(principal.user_id, principal.contractor_id):
            raise AuthorizationError()
        return issue

    async def list_issues(
        self,
        municipality_id: str,
        principal: AuthenticatedPrincipal,
        status: Optional[IssueStatus] = None,
        permit_id: Optional[str] = None,
        inspection_id: Optional[str] = None,
        batch_id: Optional[str] = None,
        page: int = 1,
        page_size: int = 50
    ) -> Tuple[List[InspectionIssue], int]:
        self._ensure_staff(municipality_id, principal)
        query = {"municipality_id": municipality_id, **ACTIVE}
        if status:
            query["status"] = IssueStatus(status).value
        if permit_id:
            query["permit_id"] = permit_id
        if inspection_id:
            query["inspection_id"] = inspection_id
        if batch_id:
            query["batch_id"] = batch_id

        total = await InspectionIssue.find(query).count()
        issues = await InspectionIssue.find(query).sort([("created_at", -1)]).skip(
            (page - 1) * page_size
        ).limit(page_size).to_list()
        return issues, total

    async def list_for_permit(self, permit: Permit) -> List[InspectionIssue]:
        return await InspectionIssue.find({"permit_id": str(permit.id), **ACTIVE}).sort(
            [("created_at", 1)]
        ).to_list()

    async def list_for_inspection(self, inspection: PermitInspection) -> List[InspectionIssue]:
        return await InspectionIssue.find({"inspection_id": str(inspection.id), **ACTIVE}).sort(
            [("created_at", 1)]
        ).to_list()

    async def _get_inspection(self, municipality_id: str, inspection_id: str) -> PermitInspection:
        inspection = await PermitInspection.find_one({
            "_id": parse_object_id(inspection_id, "Inspection"),
            "municipality_id": municipality_id,
            **ACTIVE,
        })
        if not inspection:
            raise NotFoundError("Inspection not found")
        return inspection

    async def link(self, municipality_id: str, issue_number: str, data: IssueLink,
                   principal: AuthenticatedPrincipal) -> InspectionIssue:
        """
        Attach a scanned blank card to an inspection and open the issue.

        The status check and the write are one conditional update, so two
        inspectors scanning the same card can't both link it.
        """
        self._ensure_staff(municipality_id, principal)
        inspection = await self._get_inspection(municipality_id, data.inspection_id)
        permit = await Permit.get(parse_object_id(inspection.permit_id, "Permit"))

        now = datetime.utcnow()
        entry = IssueHistoryEntry(
            action=IssueAction.ISSUE_CREATED,
            performed_by=principal.user_id,
            performed_at=now,
            details={"inspection_id": str(inspection.id)},
        )
        result = await InspectionIssue.get_pymongo_collection().update_one(
            {
                "issue_number": issue_number,
                "municipality_id": municipality_id,
                "status": IssueStatus.PENDING.value,
                **ACTIVE,
            },
            {
                "$set": {
                    "status": IssueStatus.OPEN.value,
                    "inspection_id": str(inspection.id),
                    "permit_id": inspection.permit_id,
                    "property_id": permit.property_id if permit else None,
                    "description": data.description,
                    "location": data.location,
                    "severity": data.severity.value,
                    "linked_at": now,
                    "updated_by": principal.user_id,
                    "updated_at": now,
                },
                "$push": {"history": {
                    "action": entry.action.value,
                    "performed_by": entry.performed_by,
                    "performed_at": entry.performed_at,
                    "details": entry.details,
                }},
            },
        )

        issue = await InspectionIssue.find_one({
            "issue_number": issue_number,
            "municipality_id": municipality_id,
            **ACTIVE,
        })
        if not issue:
            raise NotFoundError("Inspection issue not found")
        if result.modified_count == 0:
            raise StateError(
                f"This issue card has already been linked to an inspection (status: {issue.status.value})"
            )

        logger.info("Issue card linked", issue_number=issue_number, inspection_id=str(inspection.id),
                    permit_id=inspection.permit_id)
        await self._notify_contractor(issue, permit, "inspection_issue_created")
        return issue

    async def record(self, municipality_id: str, data: IssueCreate,
                     principal: AuthenticatedPrincipal) -> InspectionIssue:
        """Open an issue on a scanned card, or on a fresh number when no card was used"""
        self._ensure_staff(municipality_id, principal)
        uploads = [decode_data_url(p.data_url, p.filename) for p in data.photos]
        if data.issue_number:
            issue = await self.link(
                municipality_id,
                data.issue_number,
                IssueLink(inspection_id=data.inspection_id, description=data.description,
                          location=data.location, severity=data.severity),
                principal,
            )
            if uploads:
                await self._attach_photos(issue, principal, uploads)
                await issue.save()
            return issue

        inspection = await self._get_inspection(municipality_id, data.inspection_id)
        permit = await Permit.get(parse_object_id(inspection.permit_id, "Permit"))
        issue_number = (await unique_issue_numbers(1))[0]
        issue = InspectionIssue(
            issue_number=issue_number,
            municipality_id=municipality_id,
            status=IssueStatus.OPEN,
            inspection_id=str(inspection.id),
            permit_id=inspection.permit_id,
            property_id=permit.property_id if permit else None,
            description=data.description,
            location=data.location,
            severity=data.severity,
            created_by=principal.user_id,
            linked_at=datetime.utcnow(),
        )
        issue.record(IssueAction.ISSUE_CREATED, principal.user_id, inspection_id=str(inspection.id))
        await self._attach_photos(issue, principal, uploads)
        await issue.insert()

        logger.info("Inspection issue recorded", issue_number=issue_number, inspection_id=str(inspection.id))
        await self._notify_contractor(issue, permit, "inspection_issue_created")
        return issue

    async def update(self, issue: InspectionIssue, data: IssueUpdate,
                     principal: AuthenticatedPrincipal) -> InspectionIssue:
        self._ensure_staff(issue.municipality_id, principal)
        if issue.status == IssueStatus.CLOSED:
            raise StateError("This issue is closed")

        for field, value in data.dict(exclude_unset=True).items():
            if value is not None:
                setattr(issue, field, value)
        issue.updated_by = principal.user_id
        issue.updated_at = datetime.utcnow()
        await issue.save()
        return issue

    async def mark_viewed(self, issue: InspectionIssue, principal: AuthenticatedPrincipal) -> InspectionIssue:
        if principal.is_staff_for(issue.municipality_id):
            raise AuthorizationError("Only the permit holder can acknowledge an issue")
        issue.mark_viewed_by_contractor(principal.user_id)
        await issue.save()
        return issue

    async def _store_photos(self, issue: InspectionIssue, principal: AuthenticatedPrincipal,
                            uploads: List[UploadedPhoto], target: str = "a correction") -> List[Photo]:
        for data, _, content_type in uploads:
            if content_type and not content_type.startswith("image/"):
                raise ValidationError(f"Only image files can be attached to {target}")
            if not data:
                raise ValidationError("Photo file is empty")

        photos = []
        for data, filename, content_type in uploads:
            stored = await storage_service.upload_file(
                data,
                storage_service.organized_path(issue.municipality_id, f"issues/{issue.issue_number}", filename),
                {"content_type": content_type, "issue_number": issue.issue_number},
            )
            photos.append(Photo(url=stored["url"], storage_path=stored["path"], filename=filename,
                                uploaded_by=principal.user_id))
        return photos

    async def _attach_photos(self, issue: InspectionIssue, principal: AuthenticatedPrincipal,
                             uploads: List[UploadedPhoto], caption: Optional[str] = None) -> List[Photo]:
        photos = await self._store_photos(issue, principal, uploads, target="an issue")
        for photo in photos:
            photo.caption = caption
            issue.photos.append(photo)
            issue.record(IssueAction.PHOTO_ADDED, principal.user_id, photo_id=photo.id)
        if photos:
            issue.updated_by = principal.user_id
        return photos

    async def add_photo(
        self,
        issue: InspectionIssue,
        principal: AuthenticatedPrincipal,
        data: bytes,
        filename: str,
        content_type: Optional[str] = None,
        caption: Optional[str] = None
    ) -> Photo:
        self._ensure_staff(issue.municipality_id, principal)
        if issue.status == IssueStatus.CLOSED:
            raise StateError("This issue is closed")
        photo = (await self._attach_photos(issue, principal, [(data, filename, content_type)], caption))[0]
        await issue.save()
        logger.info("Photo added to inspection issue", issue_number=issue.issue_number, photo_id=photo.id)
        return photo

    async def remove_photo(self, issue: InspectionIssue, photo_id: str,
                           principal: AuthenticatedPrincipal) -> InspectionIssue:
        self._ensure_staff(issue.municipality_id, principal)
        photo = next((p for p in issue.photos if p.id == photo_id), None)
        if photo is None:
            raise NotFoundError("Photo not found")

        issue.photos = [p for p in issue.photos if p.id != photo_id]
        issue.updated_by = principal.user_id
        issue.record(IssueAction.PHOTO_REMOVED, principal.user_id, photo_id=photo_id)
        await issue.save()

        if photo.storage_path:
            try:
                await storage_service.delete_file(photo.storage_path)
            except (StorageError, OSError) as e:
                logger.warning(f"Could not delete stored photo {photo.storage_path}: {e}",
                               issue_number=issue.issue_number)
        return issue

    async def add_correction(self, issue: InspectionIssue, principal: AuthenticatedPrincipal,
                             notes: Optional[str] = None,
                             uploads: Optional[List[UploadedPhoto]] = None) -> InspectionIssue:
        if not (notes and notes.strip()) and not uploads:
            raise ValidationError("A correction needs notes or at least one photo")

        photos = await self._store_photos(issue, principal, uploads or [])
        issue.add_correction(principal.user_id, notes, photos)
        await issue.save()

        logger.info("Correction submitted", issue_number=issue.issue_number, photo_count=len(photos))
        if issue.inspection_id:
            inspection = await PermitInspection.get(parse_object_id(issue.inspection_id, "Inspection"))
            if inspection and inspection.inspector_id:
                await notification_service.send_notification(
                    inspection.inspector_id,
                    "inspection_issue_corrected",
                    {"issue_number": issue.issue_number, "permit_id": issue.permit_id},
                    municipality_id=issue.municipality_id,
                )
        return issue

    async def verify(self, issue: InspectionIssue, principal: AuthenticatedPrincipal, approved: bool,
                     notes: Optional[str] = None) -> InspectionIssue:
        self._ensure_staff(issue.municipality_id, principal)
        issue.verify_correction(principal.user_id, approved, notes)
        await issue.save()

        logger.info("Correction verified" if approved else "Correction rejected; issue reopened",
                    issue_number=issue.issue_number)
        permit = await self._permit_for(issue)
        await self._notify_contractor(
            issue, permit, "inspection_issue_verified" if approved else "inspection_issue_reopened"
        )
        return issue

    async def close(self, issue: InspectionIssue, principal: AuthenticatedPrincipal,
                    notes: Optional[str] = None) -> InspectionIssue:
        self._ensure_staff(issue.municipality_id, principal)
        issue.close(principal.user_id, notes)
        await issue.save()
        logger.info("Inspection issue closed", issue_number=issue.issue_number)
        return issue

    async def _notify_contractor(self, issue: InspectionIssue, permit: Optional[Permit], template_type: str):
        if not permit:
            return
        await notification_service.send_notification(
            permit.submitted_by or permit.created_by,
            template_type,
            {
                "issue_number": issue.issue_number,
                "permit_number": permit.permit_number,
                "description": issue.description,
                "severity": issue.severity.value,
                "location": issue.location,
            },
            municipality_id=issue.municipality_id,
        )


issue_service = IssueService()
