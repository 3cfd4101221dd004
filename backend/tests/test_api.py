"""
HTTP-level tests: authentication, error bodies and role-dependent views.
"""

from datetime import timedelta

import jwt

from permitflow.auth.principal import MunicipalRole
from permitflow.core.config import settings
from permitflow.models.permit import PermitStatus
from permitflow.models.permit_comment import CommentVisibility
from permitflow.services.review_service import review_service

from factories import (
    MUNICIPALITY_ID,
    applicant_principal,
    approve_permit,
    auth_headers,
    configure_inspections,
    create_active_schedule,
    create_permit,
    create_permit_type,
    days_from_now_at,
    municipal_principal,
    token_for,
)

PERMITS = f"{settings.API_V1_STR}/municipalities/{MUNICIPALITY_ID}/permits"


class TestAuthentication:
    async def test_health_is_public(self, api_client):
        response = await api_client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    async def test_missing_token(self, api_client):
        response = await api_client.get(PERMITS)
        assert response.status_code == 401
        assert response.json()["detail"] == "Authentication required"

    async def test_expired_token(self, api_client):
        token = token_for(applicant_principal(), expires_in=timedelta(minutes=-5))
        response = await api_client.get(PERMITS, headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Token has expired"

    async def test_token_signed_with_another_key(self, api_client):
        token = jwt.encode({"sub": "citizen-1"}, "not-the-secret", algorithm=settings.ALGORITHM)
        response = await api_client.get(PERMITS, headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401

    async def test_staff_of_another_municipality_is_refused(self, api_client):
        outsider = municipal_principal(municipality_id="shelbyville")
        response = await api_client.get(
            f"{settings.API_V1_STR}/municipalities/{MUNICIPALITY_ID}/inspection-settings",
            headers=auth_headers(outsider),
        )
        assert response.status_code == 403


class TestPermitEndpoints:
    async def test_create_permit_with_fee_snapshot(self, api_client):
        permit_type = await create_permit_type()
        await create_active_schedule(permit_type)

        response = await api_client.post(PERMITS, headers=auth_headers(applicant_principal()), json={
            "permit_type_id": str(permit_type.id),
            "property_address": "742 Evergreen Terrace",
            "applicant": {"name": "Homer Simpson"},
            "estimated_value": 15000,
        })

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "draft"
        assert "-BLD-" in body["permit_number"]
        assert sum(fee["amount"] for fee in body["fees"]) == 275

    async def test_unknown_and_malformed_ids_are_404(self, api_client):
        headers = auth_headers(municipal_principal())
        unknown = await api_client.get(f"{PERMITS}/0123456789abcdef01234567", headers=headers)
        malformed = await api_client.get(f"{PERMITS}/not-an-id", headers=headers)

        assert unknown.status_code == 404
        assert malformed.status_code == 404
        assert malformed.json()["detail"] == "Permit not found"

    async def test_stranger_is_forbidden(self, api_client):
        permit = await create_permit(await create_permit_type(), applicant_principal("citizen-1"))

        response = await api_client.get(f"{PERMITS}/{permit.id}", headers=auth_headers(applicant_principal("citizen-2")))

        assert response.status_code == 403

    async def test_owner_cannot_edit_after_submission(self, api_client):
        owner = applicant_principal()
        permit = await create_permit(await create_permit_type(), owner)
        url = f"{PERMITS}/{permit.id}"

        edited = await api_client.put(url, headers=auth_headers(owner), json={"description": "Wider deck"})
        submitted = await api_client.put(f"{url}/status", headers=auth_headers(owner),
                                         json={"status": PermitStatus.SUBMITTED.value})
        refused = await api_client.put(url, headers=auth_headers(owner), json={"description": "Even wider"})

        assert edited.status_code == 200
        assert edited.json()["description"] == "Wider deck"
        assert submitted.json()["status"] == "submitted"
        assert refused.status_code == 400
        assert "Only draft permits" in refused.json()["detail"]

    async def test_comments_depend_on_the_caller(self, api_client):
        owner = applicant_principal()
        permit = await create_permit(await create_permit_type(), owner)
        staff = municipal_principal(MunicipalRole.STAFF, user_id="clerk")
        await review_service.add_comment(permit, staff, "Zoning looks tight")
        await review_service.add_comment(permit, staff, "Please add a site plan", visibility=CommentVisibility.PUBLIC)
        url = f"{PERMITS}/{permit.id}/comments"

        as_owner = await api_client.get(url, headers=auth_headers(owner))
        as_staff = await api_client.get(url, headers=auth_headers(staff))

        assert [c["content"] for c in as_owner.json()] == ["Please add a site plan"]
        assert [c["content"] for c in as_staff.json()] == ["Zoning looks tight", "Please add a site plan"]


class TestInspectionEndpoints:
    async def test_buffer_error_carries_the_earliest_date(self, api_client):
        await configure_inspections()
        owner = applicant_principal()
        permit = await approve_permit(await create_permit(await create_permit_type(), owner))
        url = f"{PERMITS}/{permit.id}/inspections"

        too_soon = await api_client.post(url, headers=auth_headers(owner), json={
            "type": "foundation",
            "scheduled_date": days_from_now_at(1).isoformat(),
        })
        booked = await api_client.post(url, headers=auth_headers(owner), json={
            "type": "foundation",
            "scheduled_date": days_from_now_at(3).isoformat(),
        })

        assert too_soon.status_code == 400
        body = too_soon.json()
        assert body["detail"] == "This inspection type requires at least 2 day(s) advance notice"
        assert body["buffer_days"] == 2
        assert "min_allowed_date" in body
        assert booked.status_code == 200
        assert booked.json()["inspector_id"] == "inspector-1"

    async def test_available_slots(self, api_client):
        await configure_inspections()
        owner = applicant_principal()
        permit = await approve_permit(await create_permit(await create_permit_type(), owner))

        response = await api_client.get(f"{PERMITS}/{permit.id}/inspections/available-slots",
                                        params={"inspection_type": "foundation"}, headers=auth_headers(owner))

        assert response.status_code == 200
        body = response.json()
        assert body["buffer_days"] == 2
        assert body["available_slots"]
