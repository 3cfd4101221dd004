import httpx
import pytest

from permitflow.models.permit import Permit, PermitStatus
from permitflow.services.notification_service import NotificationService, notification_service
from permitflow.services.permit_service import permit_service

from factories import MUNICIPALITY_ID, applicant_principal, create_permit, create_permit_type


def service_answering(handler) -> NotificationService:
    return NotificationService(base_url="http://notifications.test", transport=httpx.MockTransport(handler))


def server_error(request):
    return httpx.Response(500, json={"error": "template store offline"})


def unreachable(request):
    raise httpx.ConnectError("connection refused", request=request)


class TestNotificationService:
    """Delivery failures are logged and reported, never raised"""

    async def test_accepted_notification(self):
        seen = {}

        def accept(request):
            seen["path"] = request.url.path
            seen["body"] = request.content
            return httpx.Response(202)

        sent = await service_answering(accept).send_notification(
            "citizen-1", "permit_status_changed", {"status": "submitted"}, municipality_id=MUNICIPALITY_ID
        )

        assert sent
        assert seen["path"] == "/notifications"
        assert b'"template_type":"permit_status_changed"' in seen["body"].replace(b" ", b"")

    @pytest.mark.parametrize("handler", [server_error, unreachable])
    async def test_failures_return_false(self, handler):
        sent = await service_answering(handler).send_notification("citizen-1", "permit_status_changed", {})
        assert sent is False

    async def test_malformed_url_returns_false(self):
        service = NotificationService(base_url="http://[not-a-host")
        assert await service.send_notification("citizen-1", "permit_status_changed", {}) is False

    async def test_unconfigured_service_skips(self):
        assert await NotificationService(base_url="").send_notification("citizen-1", "x", {}) is False

    async def test_missing_recipient_skips(self):
        assert await service_answering(server_error).send_notification(None, "x", {}) is False

    async def test_bulk_counts_deliveries_once_per_user(self):
        calls = []

        def accept(request):
            calls.append(request)
            return httpx.Response(200)

        sent = await service_answering(accept).send_bulk(["a", "b", "a"], "inspection_scheduled", {})

        assert sent == 2
        assert len(calls) == 2

    @pytest.mark.parametrize("handler", [server_error, unreachable])
    async def test_status_change_commits_when_delivery_fails(self, clean_db, monkeypatch, handler):
        monkeypatch.setattr(notification_service, "send_notification",
                            service_answering(handler).send_notification)
        owner = applicant_principal()
        permit = await create_permit(await create_permit_type(), owner)

        permit = await permit_service.change_status(permit, PermitStatus.SUBMITTED, owner)

        assert permit.status == PermitStatus.SUBMITTED
        stored = await Permit.get(permit.id)
        assert stored.status == PermitStatus.SUBMITTED
