"""
Batches of blank, pre-printed inspection issue cards.

Each card gets a ``YYMMDD-XXXXXX`` number and a QR image that encodes the
card's URL. Images only need to live until the batch is printed.
"""

import secrets
import string
from datetime import datetime
from typing import List, Optional, Set, Tuple

from beanie import PydanticObjectId
from pymongo.errors import DuplicateKeyError

from ..auth.principal import AuthenticatedPrincipal
from ..core.config import settings
from ..core.errors import ConflictError, NotFoundError, StateError, ValidationError
from ..core.logging_config import get_permit_logger
from ..models.common import ACTIVE
from ..models.inspection_issue import InspectionIssue, IssueAction, IssueStatus
from ..schemas.issue import (
    BatchCleanupResponse,
    BatchDetailsResponse,
    BatchGenerateResponse,
    BatchSummary,
    GeneratedCard,
)
from .qr_generator import qr_generator
from .storage_service import StorageError, storage_service

logger = get_permit_logger(__name__)

ISSUE_CODE_ALPHABET = string.ascii_uppercase + string.digits
ISSUE_CODE_LENGTH = 6


def generate_issue_number(date: Optional[datetime] = None) -> str:
    date = date or datetime.utcnow()
    code = "".join(secrets.choice(ISSUE_CODE_ALPHABET) for _ in range(ISSUE_CODE_LENGTH))
    return f"{date.strftime('%y%m%d')}-{code}"


async def unique_issue_numbers(quantity: int, date: Optional[datetime] = None,
                               max_attempts: Optional[int] = None,
                               exclude: Optional[Set[str]] = None) -> List[str]:
    """
    Draw ``quantity`` issue numbers unused both in this batch and in the database.

    Raises:
        ValidationError if a free number can't be found within ``max_attempts`` draws
    """
    max_attempts = max_attempts or settings.ISSUE_NUMBER_MAX_ATTEMPTS
    numbers: List[str] = []
    seen: Set[str] = set(exclude or ())
    while len(numbers) < quantity:
        for _ in range(max_attempts):
            candidate = generate_issue_number(date)
            if candidate in seen:
                continue
            if await InspectionIssue.find_one({"issue_number": candidate}):
                continue
            break
        else:
            raise ValidationError(f"Failed to generate unique issue number after {max_attempts} attempts")
        seen.add(candidate)
        numbers.append(candidate)
    return numbers


def _status_counts(issues: List[InspectionIssue]) -> dict:
    counts = {}
    for issue in issues:
        counts[issue.status.value] = counts.get(issue.status.value, 0) + 1
    return counts


class IssueBatchService:
    """Generate, print and retire batches of issue cards"""

    async def _store_qr(self, issue: InspectionIssue, municipality_id: str, batch_id: str) -> bool:
        try:
            qr_bytes = await qr_generator.generate_issue_card_qr(municipality_id, issue.issue_number)
            stored = await storage_service.upload_file(
                qr_bytes,
                storage_service.organized_path(municipality_id, f"issue-cards/{batch_id}",
                                               f"{issue.issue_number}.png"),
                {"content_type": "image/png", "issue_number": issue.issue_number},
            )
        except (StorageError, OSError) as e:
            logger.warning(f"QR image for issue card {issue.issue_number} could not be stored: {e}",
                           batch_id=batch_id)
            return False
        issue.qr_code_url = stored["url"]
        issue.qr_storage_path = stored["path"]
        return True

    async def _create_card(self, municipality_id: str, batch_id: str, number: str, taken: Set[str],
                           principal: AuthenticatedPrincipal, now: datetime) -> Tuple[InspectionIssue, bool]:
        """
        Insert one card, drawing a fresh number if another request claimed ``number`` first.

        Returns the card and whether its QR image was stored.
        """
        for _ in range(settings.ISSUE_NUMBER_MAX_ATTEMPTS):
            issue = InspectionIssue(
                issue_number=number,
                municipality_id=municipality_id,
                batch_id=batch_id,
                created_by=principal.user_id,
            )
            qr_stored = await self._store_qr(issue, municipality_id, batch_id)
            issue.record(IssueAction.CARD_GENERATED, principal.user_id, batch_id=batch_id,
                         generated_at=now.isoformat())
            try:
                await issue.insert()
                return issue, qr_stored
            except DuplicateKeyError:
                logger.info(f"Issue number {number} was taken concurrently; drawing another", batch_id=batch_id)
                if issue.qr_storage_path:
                    await self._delete_qr_assets([issue])
                taken.add(number)
                number = (await unique_issue_numbers(1, now, exclude=taken))[0]
        raise ConflictError(
            f"Failed to generate unique issue number after {settings.ISSUE_NUMBER_MAX_ATTEMPTS} attempts"
        )

    async def generate_batch(self, municipality_id: str, principal: AuthenticatedPrincipal,
                             quantity: int = 10) -> BatchGenerateResponse:
        if quantity < 1 or quantity > settings.ISSUE_BATCH_MAX:
            raise ValidationError(f"Quantity must be between 1 and {settings.ISSUE_BATCH_MAX}")

        batch_id = str(PydanticObjectId())
        now = datetime.utcnow()
        numbers = await unique_issue_numbers(quantity, now)
        taken = set(numbers)

        cards = []
        qr_failures = []
        for number in numbers:
            issue, qr_stored = await self._create_card(municipality_id, batch_id, number, taken, principal, now)
            if not qr_stored:
                qr_failures.append(issue.issue_number)
            cards.append(GeneratedCard(issue_number=issue.issue_number, qr_code_url=issue.qr_code_url))

        logger.info(f"Generated batch of {len(cards)} issue cards", batch_id=batch_id,
                    qr_failed=len(qr_failures))
        return BatchGenerateResponse(
            batch_id=batch_id,
            quantity=len(cards),
            cards=cards,
            qr_failures=qr_failures,
            generated_at=now,
        )

    async def list_batches(self, municipality_id: str) -> List[BatchSummary]:
        pipeline = [
            {"$match": {"municipality_id": municipality_id, "batch_id": {"$ne": None}, **ACTIVE}},
            {"$group": {
                "_id": {"batch_id": "$batch_id", "status": "$status"},
                "count": {"$sum": 1},
                "created_at": {"$min": "$created_at"},
                "created_by": {"$first": "$created_by"},
            }},
            {"$group": {
                "_id": "$_id.batch_id",
                "total_cards": {"$sum": "$count"},
                "statuses": {"$push": {"status": "$_id.status", "count": "$count"}},
                "created_at": {"$min": "$created_at"},
                "created_by": {"$first": "$created_by"},
            }},
            {"$sort": {"created_at": -1}},
        ]
        cursor = await InspectionIssue.get_pymongo_collection().aggregate(pipeline)
        rows = await cursor.to_list(length=None)
        return [
            BatchSummary(
                batch_id=row["_id"],
                total_cards=row["total_cards"],
                status_counts={s["status"]: s["count"] for s in row["statuses"]},
                created_at=row["created_at"],
                created_by=row.get("created_by"),
            )
            for row in rows
        ]

    async def _batch_issues(self, municipality_id: str, batch_id: str) -> List[InspectionIssue]:
        issues = await InspectionIssue.find(
            {"municipality_id": municipality_id, "batch_id": batch_id, **ACTIVE}
        ).sort([("issue_number", 1)]).to_list()
        if not issues:
            raise NotFoundError("Batch not found")
        return issues

    async def batch_details(self, municipality_id: str, batch_id: str) -> BatchDetailsResponse:
        issues = await self._batch_issues(municipality_id, batch_id)
        return BatchDetailsResponse(
            batch_id=batch_id,
            total_cards=len(issues),
            status_counts=_status_counts(issues),
            issues=issues,
            generated_at=min(i.created_at for i in issues),
        )

    async def _delete_qr_assets(self, issues: List[InspectionIssue]) -> tuple:
        deleted = failed = 0
        for issue in issues:
            if not issue.qr_storage_path:
                continue
            try:
                if await storage_service.delete_file(issue.qr_storage_path):
                    deleted += 1
            except (StorageError, OSError) as e:
                failed += 1
                logger.warning(f"Could not delete QR image for issue card {issue.issue_number}: {e}")
        return deleted, failed

    async def mark_printed(self, municipality_id: str, batch_id: str,
                           principal: AuthenticatedPrincipal) -> BatchCleanupResponse:
        """Drop the QR images once the cards are on paper; card statuses are untouched"""
        issues = await self._batch_issues(municipality_id, batch_id)
        deleted, failed = await self._delete_qr_assets(issues)

        await InspectionIssue.get_pymongo_collection().update_many(
            {"municipality_id": municipality_id, "batch_id": batch_id, **ACTIVE},
            {"$set": {
                "qr_code_url": None,
                "qr_storage_path": None,
                "updated_by": principal.user_id,
                "updated_at": datetime.utcnow(),
            }},
        )
        logger.info(f"Batch marked as printed; {deleted} QR images deleted", batch_id=batch_id)
        return BatchCleanupResponse(batch_id=batch_id, cards=len(issues),
                                    qr_codes_deleted=deleted, qr_codes_failed=failed)

    async def delete_batch(self, municipality_id: str, batch_id: str,
                           principal: AuthenticatedPrincipal) -> BatchCleanupResponse:
        issues = await self._batch_issues(municipality_id, batch_id)
        used = [i for i in issues if i.status != IssueStatus.PENDING]
        if used:
            raise StateError(f"Cannot delete batch: {len(used)} cards have been used")

        now = datetime.utcnow()
        collection = InspectionIssue.get_pymongo_collection()
        card_ids = [i.id for i in issues]
        result = await collection.update_many(
            {"_id": {"$in": card_ids}, "status": IssueStatus.PENDING.value, **ACTIVE},
            {"$set": {
                "lifecycle.is_active": False,
                "lifecycle.deleted_at": now,
                "lifecycle.deleted_by": principal.user_id,
                "updated_at": now,
            }},
        )
        if result.modified_count != len(issues):
            # A card was linked while the batch was being deleted; keep the batch whole
            await collection.update_many(
                {"_id": {"$in": card_ids}, "status": IssueStatus.PENDING.value, "lifecycle.is_active": False},
                {"$set": {"lifecycle.is_active": True, "lifecycle.deleted_at": None, "lifecycle.deleted_by": None}},
            )
            used = len(issues) - result.modified_count
            raise StateError(f"Cannot delete batch: {used} cards have been used")

        deleted, failed = await self._delete_qr_assets(issues)
        logger.info(f"Deleted batch of {result.modified_count} issue cards", batch_id=batch_id)
        return BatchCleanupResponse(batch_id=batch_id, cards=result.modified_count,
                                    qr_codes_deleted=deleted, qr_codes_failed=failed)


issue_batch_service = IssueBatchService()
