"""
Read-only permit views: the staff work queue, statistics, the project list
and an applicant's permits across municipalities.
"""

import math
import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from ..auth.principal import AuthenticatedPrincipal, GlobalRole
from ..core.errors import AuthorizationError
from ..core.logging_config import get_permit_logger
from ..models.common import ACTIVE
from ..models.permit import Permit, PermitStatus, REVIEWABLE_STATUSES
from ..schemas.permit import (
    DashboardStats,
    KindBucket,
    KindTotals,
    MonthBucket,
    MunicipalityPermits,
    MyPermitsResponse,
    PermitQueueResponse,
    PermitQueueStats,
    PermitStatsResponse,
    ProcessingTime,
    ProjectListResponse,
    ProjectListStats,
    ProjectSummary,
)

logger = get_permit_logger(__name__)

ATTENTION_DAYS = 30
EXPIRING_DAYS = 30
MS_PER_DAY = 1000 * 60 * 60 * 24

OPEN_STATUSES = {PermitStatus.SUBMITTED, PermitStatus.UNDER_REVIEW, PermitStatus.APPROVED}
DONE_STATUSES = {PermitStatus.APPROVED, PermitStatus.CLOSED}


def percent_change(current: float, previous: float) -> int:
    if previous <= 0:
        return 0
    return int(round((current - previous) / previous * 100))


def processing_days(permit: Permit) -> Optional[int]:
    if not permit.approval_date or not permit.application_date:
        return None
    return math.ceil((permit.approval_date - permit.application_date).total_seconds() / 86400)


def average_processing_days(permits: List[Permit]) -> int:
    days = [d for d in (processing_days(p) for p in permits if p.status in DONE_STATUSES) if d is not None]
    if not days:
        return 0
    return int(round(sum(days) / len(days)))


def year_bounds(year: int) -> Tuple[datetime, datetime]:
    return datetime(year, 1, 1), datetime(year + 1, 1, 1)


class PermitReportService:

    async def queue(self, municipality_id: str, principal: AuthenticatedPrincipal,
                    assigned_to_me: bool = False, now: Optional[datetime] = None) -> PermitQueueResponse:
        """Permits waiting on staff, oldest application first"""
        now = now or datetime.utcnow()
        query: Dict[str, Any] = {
            "municipality_id": municipality_id,
            "status": {"$in": [s.value for s in REVIEWABLE_STATUSES]},
            **ACTIVE,
        }
        if assigned_to_me:
            query["department_reviews.assigned_to"] = principal.user_id

        permits = await Permit.find(query).sort([("application_date", 1)]).to_list()
        needing_attention = await Permit.find({
            "municipality_id": municipality_id,
            "status": PermitStatus.UNDER_REVIEW.value,
            "application_date": {"$lt": now - timedelta(days=ATTENTION_DAYS)},
            **ACTIVE,
        }).sort([("application_date", 1)]).to_list()
        expiring_soon = await Permit.find({
            "municipality_id": municipality_id,
            "status": PermitStatus.APPROVED.value,
            "expiration_date": {"$gte": now, "$lte": now + timedelta(days=EXPIRING_DAYS)},
            **ACTIVE,
        }).sort([("expiration_date", 1)]).to_list()

        for permit in permits + needing_attention:
            permit.refresh_sla(now)

        counts = {status: 0 for status in REVIEWABLE_STATUSES}
        for permit in permits:
            counts[permit.status] += 1
        return PermitQueueResponse(
            queue=permits,
            needing_attention=needing_attention,
            expiring_soon=expiring_soon,
            stats=PermitQueueStats(
                submitted=counts[PermitStatus.SUBMITTED],
                under_review=counts[PermitStatus.UNDER_REVIEW],
                on_hold=counts[PermitStatus.ON_HOLD],
                total=len(permits),
            ),
        )

    async def stats(self, municipality_id: str, start_date: Optional[datetime] = None,
                    end_date: Optional[datetime] = None) -> PermitStatsResponse:
        """Applications in a date range (default: the last year) grouped by kind, status and month"""
        end_date = end_date or datetime.utcnow()
        start_date = start_date or end_date - timedelta(days=365)
        pipeline = [
            {"$match": {
                "municipality_id": municipality_id,
                "application_date": {"$gte": start_date, "$lte": end_date},
                **ACTIVE,
            }},
            {"$facet": {
                "by_type": [
                    {"$group": {"_id": "$type", "count": {"$sum": 1}, "total_value": {"$sum": "$estimated_value"}}},
                    {"$sort": {"count": -1, "_id": 1}},
                ],
                "by_status": [
                    {"$group": {"_id": "$status", "count": {"$sum": 1}}},
                ],
                "by_month": [
                    {"$group": {
                        "_id": {"year": {"$year": "$application_date"}, "month": {"$month": "$application_date"}},
                        "count": {"$sum": 1},
                        "total_value": {"$sum": "$estimated_value"},
                    }},
                    {"$sort": {"_id.year": 1, "_id.month": 1}},
                ],
                "processing": [
                    {"$match": {"approval_date": {"$ne": None}}},
                    {"$project": {"days": {
                        "$divide": [{"$subtract": ["$approval_date", "$application_date"]}, MS_PER_DAY]
                    }}},
                    {"$group": {
                        "_id": None,
                        "avg_days": {"$avg": "$days"},
                        "min_days": {"$min": "$days"},
                        "max_days": {"$max": "$days"},
                    }},
                ],
                "value": [
                    {"$group": {"_id": None, "total": {"$sum": "$estimated_value"}, "avg": {"$avg": "$estimated_value"}}},
                ],
            }},
        ]
        cursor = await Permit.get_pymongo_collection().aggregate(pipeline)
        rows = await cursor.to_list(length=None)
        facets = rows[0] if rows else {}

        processing = facets.get("processing") or []
        value = (facets.get("value") or [{}])[0]
        return PermitStatsResponse(
            start_date=start_date,
            end_date=end_date,
            by_type=[
                KindBucket(type=row["_id"], count=row["count"], total_value=row["total_value"])
                for row in facets.get("by_type", [])
            ],
            by_status={row["_id"]: row["count"] for row in facets.get("by_status", [])},
            by_month=[
                MonthBucket(year=row["_id"]["year"], month=row["_id"]["month"],
                            count=row["count"], total_value=row["total_value"])
                for row in facets.get("by_month", [])
            ],
            processing_time=ProcessingTime(
                avg_days=round(processing[0]["avg_days"], 1),
                min_days=round(processing[0]["min_days"], 1),
                max_days=round(processing[0]["max_days"], 1),
            ) if processing else None,
            total_value=value.get("total") or 0,
            average_value=round(value.get("avg") or 0, 2),
        )

    async def dashboard(self, municipality_id: str, now: Optional[datetime] = None) -> DashboardStats:
        """This year against last year, plus the current status counts"""
        now = now or datetime.utcnow()
        this_start, this_end = year_bounds(now.year)
        last_start, last_end = year_bounds(now.year - 1)

        this_year = await Permit.find({
            "municipality_id": municipality_id,
            "created_at": {"$gte": this_start, "$lt": this_end},
            **ACTIVE,
        }).to_list()
        last_year = await Permit.find({
            "municipality_id": municipality_id,
            "created_at": {"$gte": last_start, "$lt": last_end},
            **ACTIVE,
        }).to_list()

        cursor = await Permit.get_pymongo_collection().aggregate([
            {"$match": {"municipality_id": municipality_id, **ACTIVE}},
            {"$group": {"_id": "$status", "count": {"$sum": 1}}},
        ])
        status_counts = {row["_id"]: row["count"] for row in await cursor.to_list(length=None)}

        revenue_this_year = sum(p.total_paid for p in this_year)
        revenue_last_year = sum(p.total_paid for p in last_year)
        avg_days = average_processing_days(this_year)
        avg_days_last_year = average_processing_days(last_year)

        by_type: Dict[str, KindTotals] = {}
        for permit in this_year:
            totals = by_type.setdefault(permit.type.value, KindTotals())
            totals.permits += 1
            totals.revenue += int(round(permit.total_paid))

        return DashboardStats(
            current_year=now.year,
            permits_this_year=len(this_year),
            permits_vs_last_year=percent_change(len(this_year), len(last_year)),
            revenue_this_year=int(round(revenue_this_year)),
            revenue_vs_last_year=percent_change(revenue_this_year, revenue_last_year),
            permits_completed=sum(1 for p in this_year if p.status in DONE_STATUSES),
            avg_processing_days=avg_days,
            avg_processing_days_last_year=avg_days_last_year,
            avg_processing_vs_last_year=abs(percent_change(avg_days, avg_days_last_year)),
            permits_open=sum(status_counts.get(s.value, 0) for s in OPEN_STATUSES),
            permits_under_review=status_counts.get(PermitStatus.UNDER_REVIEW.value, 0),
            permits_approved=status_counts.get(PermitStatus.APPROVED.value, 0),
            permits_on_hold=status_counts.get(PermitStatus.ON_HOLD.value, 0),
            by_type=by_type,
        )

    async def list_projects(self, municipality_id: str, status: Optional[PermitStatus] = None,
                            search: Optional[str] = None,
                            property_id: Optional[str] = None) -> ProjectListResponse:
        query: Dict[str, Any] = {"municipality_id": municipality_id, "is_project": True, **ACTIVE}
        if status:
            query["status"] = PermitStatus(status).value
        if property_id:
            query["property_id"] = property_id
        if search:
            pattern = {"$regex": re.escape(search), "$options": "i"}
            query["$or"] = [{"permit_number": pattern}, {"project_name": pattern}]

        projects = await Permit.find(query).sort([("created_at", -1)]).to_list()
        summaries = []
        for project in projects:
            count = await Permit.find({"project_id": str(project.id), "is_project": False, **ACTIVE}).count()
            summaries.append(ProjectSummary(project=project, permit_count=count))

        return ProjectListResponse(
            projects=summaries,
            stats=ProjectListStats(
                total=len(projects),
                active=sum(1 for p in projects if p.status in OPEN_STATUSES),
                completed=sum(1 for p in projects if p.status == PermitStatus.CLOSED),
                on_hold=sum(1 for p in projects if p.status == PermitStatus.ON_HOLD),
                total_value=sum(p.estimated_value for p in projects),
            ),
        )

    async def my_permits(self, principal: AuthenticatedPrincipal, status: Optional[PermitStatus] = None,
                         municipality_id: Optional[str] = None) -> MyPermitsResponse:
        """Every permit the caller created, submitted or holds through their contractor"""
        if not principal.is_contractor_or_citizen:
            raise AuthorizationError(
                "This endpoint is for contractors and citizens only. "
                "Municipal staff should use the queue endpoint."
            )
        owners = [{"created_by": principal.user_id}, {"submitted_by": principal.user_id}]
        if principal.contractor_id:
            owners.append({"contractor_id": principal.contractor_id})
        query: Dict[str, Any] = {"$or": owners, **ACTIVE}
        if status:
            query["status"] = PermitStatus(status).value
        if municipality_id:
            query["municipality_id"] = municipality_id

        permits = await Permit.find(query).sort([("created_at", -1)]).to_list()
        stats = {"total": len(permits)}
        stats.update({s.value: 0 for s in PermitStatus})
        grouped: Dict[str, List[Permit]] = {}
        for permit in permits:
            permit.refresh_sla()
            stats[permit.status.value] += 1
            grouped.setdefault(permit.municipality_id, []).append(permit)

        logger.debug("Listed applicant permits", permits=len(permits))
        return MyPermitsResponse(
            permits=permits,
            stats=stats,
            by_municipality=[MunicipalityPermits(municipality_id=m, permits=p) for m, p in grouped.items()],
            is_contractor=principal.global_role == GlobalRole.CONTRACTOR,
            contractor_id=principal.contractor_id,
        )


permit_report_service = PermitReportService()
