from datetime import datetime, timedelta

import pytest

from permitflow.auth.principal import MunicipalRole
from permitflow.core.config import settings
from permitflow.core.errors import AuthorizationError
from permitflow.models.permit import Applicant, Permit, PermitStatus
from permitflow.models.permit_type import PermitKind, PermitType
from permitflow.schemas.permit import ProjectCreate
from permitflow.services.permit_report_service import permit_report_service
from permitflow.services.permit_service import permit_service

from factories import (
    MUNICIPALITY_ID,
    OTHER_MUNICIPALITY_ID,
    applicant_principal,
    approve_permit,
    auth_headers,
    create_active_schedule,
    create_permit,
    create_permit_type,
    municipal_principal,
)

MUNICIPALITY_URL = f"{settings.API_V1_STR}/municipalities/{MUNICIPALITY_ID}"


async def backdate(permit: Permit, **fields):
    await Permit.get_pymongo_collection().update_one({"_id": permit.id}, {"$set": fields})


async def submitted_permit(permit_type, owner=None, under_review=False) -> Permit:
    permit = await create_permit(permit_type, owner)
    permit.update_status(PermitStatus.SUBMITTED, permit.created_by)
    if under_review:
        permit.update_status(PermitStatus.UNDER_REVIEW, "staff-admin")
    await permit.save()
    return permit


class TestQueue:
    """Permits waiting on staff"""

    async def test_queue_holds_reviewable_permits(self, clean_db):
        permit_type = await create_permit_type()
        await create_permit(permit_type)
        submitted = await submitted_permit(permit_type)
        stalled = await submitted_permit(permit_type, under_review=True)
        await backdate(stalled, application_date=datetime.utcnow() - timedelta(days=45))
        expiring = await approve_permit(await create_permit(permit_type))
        await backdate(expiring, expiration_date=datetime.utcnow() + timedelta(days=10))
        await approve_permit(await create_permit(permit_type))

        queue = await permit_report_service.queue(MUNICIPALITY_ID, municipal_principal())

        assert [p.id for p in queue.queue] == [stalled.id, submitted.id]
        assert queue.stats.model_dump() == {"submitted": 1, "under_review": 1, "on_hold": 0, "total": 2}
        assert [p.id for p in queue.needing_attention] == [stalled.id]
        assert [p.id for p in queue.expiring_soon] == [expiring.id]

    async def test_assigned_to_me(self, clean_db):
        permit_type = await create_permit_type()
        mine = await submitted_permit(permit_type)
        mine.department_reviews[0].assigned_to = "clerk"
        await mine.save()
        await submitted_permit(permit_type)
        clerk = municipal_principal(MunicipalRole.STAFF, user_id="clerk")

        queue = await permit_report_service.queue(MUNICIPALITY_ID, clerk, assigned_to_me=True)

        assert [p.id for p in queue.queue] == [mine.id]

    async def test_queue_endpoint(self, api_client):
        permit_type = await create_permit_type()
        await submitted_permit(permit_type)
        readonly = municipal_principal(MunicipalRole.READONLY, user_id="viewer")

        response = await api_client.get(f"{MUNICIPALITY_URL}/permits/queue", headers=auth_headers(readonly))
        refused = await api_client.get(f"{MUNICIPALITY_URL}/permits/queue",
                                       headers=auth_headers(applicant_principal()))

        assert response.status_code == 200
        assert response.json()["stats"]["total"] == 1
        assert refused.status_code == 403


class TestStatistics:
    async def test_stats_group_applications(self, clean_db):
        building = await create_permit_type()
        electrical = await create_permit_type(name="Electrical", kind=PermitKind.ELECTRICAL, departments=())
        await create_permit(building, estimated_value=10000)
        approved = await approve_permit(await create_permit(building, estimated_value=30000))
        await backdate(approved, application_date=approved.approval_date - timedelta(days=10))
        await create_permit(electrical, estimated_value=2000)
        removed = await create_permit(electrical, estimated_value=99999)
        await backdate(removed, **{"lifecycle.is_active": False})

        stats = await permit_report_service.stats(MUNICIPALITY_ID)

        assert [(b.type, b.count, b.total_value) for b in stats.by_type] == [
            ("building", 2, 40000),
            ("electrical", 1, 2000),
        ]
        assert stats.by_status == {"draft": 2, "approved": 1}
        assert sum(m.count for m in stats.by_month) == 3
        assert stats.processing_time.avg_days == pytest.approx(10, abs=0.1)
        assert stats.total_value == 42000
        assert stats.average_value == 14000

    async def test_stats_respect_the_date_range(self, clean_db):
        permit_type = await create_permit_type()
        old = await create_permit(permit_type)
        await backdate(old, application_date=datetime.utcnow() - timedelta(days=400))
        await create_permit(permit_type)

        stats = await permit_report_service.stats(MUNICIPALITY_ID)

        assert stats.by_status == {"draft": 1}
        assert stats.processing_time is None

    async def test_dashboard_compares_with_last_year(self, clean_db):
        permit_type = await create_permit_type()
        await create_active_schedule(permit_type)
        paid = await create_permit(permit_type)
        for fee in paid.fees:
            fee.paid = True
            fee.paid_amount = fee.amount
        await paid.save()
        await submitted_permit(permit_type)
        previous = await create_permit(permit_type)
        now = datetime.utcnow()
        await backdate(previous, created_at=datetime(now.year - 1, 6, 1))

        dashboard = await permit_report_service.dashboard(MUNICIPALITY_ID, now=now)

        assert dashboard.current_year == now.year
        assert dashboard.permits_this_year == 2
        assert dashboard.permits_vs_last_year == 100
        assert dashboard.revenue_this_year == 275
        assert dashboard.revenue_vs_last_year == 0
        assert dashboard.permits_open == 1
        assert dashboard.by_type["building"].permits == 2
        assert dashboard.by_type["building"].revenue == 275

    async def test_dashboard_endpoint(self, api_client):
        await create_permit(await create_permit_type())

        response = await api_client.get(f"{MUNICIPALITY_URL}/permits/dashboard-stats",
                                        headers=auth_headers(municipal_principal()))

        assert response.status_code == 200
        assert response.json()["permits_this_year"] == 1


class TestProjectList:
    async def create_project(self, name: str):
        project_type = await PermitType.find_one({"name": "Whole House Renovation"}) \
            or await create_permit_type(name="Whole House Renovation")
        child_type = await PermitType.find_one({"name": "Electrical"}) \
            or await create_permit_type(name="Electrical", departments=())
        project, _, _ = await permit_service.create_project(
            MUNICIPALITY_ID,
            ProjectCreate(
                permit_type_id=str(project_type.id),
                project_name=name,
                applicant=Applicant(name="Homer Simpson"),
                estimated_value=50000,
                child_permit_type_ids=[str(child_type.id), str(child_type.id)],
            ),
            municipal_principal(),
        )
        return project

    async def test_projects_with_child_counts(self, clean_db):
        project = await self.create_project("Kitchen (phase 1)")
        await create_permit(await create_permit_type())

        listing = await permit_report_service.list_projects(MUNICIPALITY_ID)

        assert [(s.project.id, s.permit_count) for s in listing.projects] == [(project.id, 2)]
        assert listing.stats.total == 1
        assert listing.stats.total_value == 50000

    async def test_search_is_literal(self, clean_db):
        await self.create_project("Kitchen (phase 1)")
        await self.create_project("Garage")

        found = await permit_report_service.list_projects(MUNICIPALITY_ID, search="kitchen (PHASE")
        missing = await permit_report_service.list_projects(MUNICIPALITY_ID, search="(basement")

        assert [s.project.project_name for s in found.projects] == ["Kitchen (phase 1)"]
        assert missing.projects == []


class TestMyPermits:
    """An applicant's permits across municipalities"""

    async def test_permits_grouped_by_municipality(self, clean_db):
        owner = applicant_principal("citizen-1")
        here = await create_permit(await create_permit_type(), owner)
        there = await create_permit(await create_permit_type(municipality_id=OTHER_MUNICIPALITY_ID), owner)
        await create_permit(await create_permit_type(name="Fence"), applicant_principal("citizen-2"))

        mine = await permit_report_service.my_permits(owner)

        assert {p.id for p in mine.permits} == {here.id, there.id}
        assert mine.stats["total"] == 2
        assert mine.stats["draft"] == 2
        assert {g.municipality_id for g in mine.by_municipality} == {MUNICIPALITY_ID, OTHER_MUNICIPALITY_ID}
        assert not mine.is_contractor

        filtered = await permit_report_service.my_permits(owner, municipality_id=OTHER_MUNICIPALITY_ID)
        assert [p.id for p in filtered.permits] == [there.id]

    async def test_contractor_sees_company_permits(self, clean_db):
        permit = await create_permit(await create_permit_type(), applicant_principal("citizen-2"),
                                     contractor_id="ctr-9")
        colleague = applicant_principal("builder-1", contractor_id="ctr-9")

        mine = await permit_report_service.my_permits(colleague)

        assert [p.id for p in mine.permits] == [permit.id]
        assert mine.is_contractor
        assert mine.contractor_id == "ctr-9"

    async def test_staff_use_the_queue(self, clean_db):
        with pytest.raises(AuthorizationError, match="queue endpoint"):
            await permit_report_service.my_permits(municipal_principal())

    async def test_my_permits_endpoint(self, api_client):
        owner = applicant_principal()
        await create_permit(await create_permit_type(), owner)

        response = await api_client.get(f"{settings.API_V1_STR}/permits/my-permits", headers=auth_headers(owner))
        refused = await api_client.get(f"{settings.API_V1_STR}/permits/my-permits",
                                       headers=auth_headers(municipal_principal()))

        assert response.status_code == 200
        assert response.json()["stats"]["total"] == 1
        assert refused.status_code == 403
