from types import SimpleNamespace
from typing import Optional

import pytest
import stripe

from permitflow.core.errors import AuthorizationError, ValidationError
from permitflow.models.payment_account import PaymentAccount
from permitflow.models.permit import Permit, PermitStatus
from permitflow.services.payment_service import (
    PaymentGatewayError,
    StripeGateway,
    calculate_payment_breakdown,
)
from permitflow.services.permit_service import PermitService

from factories import (
    MUNICIPALITY_ID,
    applicant_principal,
    create_active_schedule,
    create_permit,
    create_permit_type,
)


class FakeGateway:
    """Records intents and reports them back with a configurable status"""

    def __init__(self, status: str = "succeeded"):
        self.status = status
        self.created = []

    async def create_payment_intent(self, amount_cents, destination_account, transfer_cents, description, metadata):
        intent = {
            "id": f"pi_{len(self.created) + 1}",
            "client_secret": "secret",
            "amount": amount_cents,
            "transfer_data": {"destination": destination_account, "amount": transfer_cents},
            "metadata": metadata,
        }
        self.created.append(intent)
        return intent

    async def retrieve_payment_intent(self, payment_intent_id):
        intent = next(i for i in self.created if i["id"] == payment_intent_id)
        return {**intent, "status": self.status}


class TestBreakdown:
    """Grossing up the permit fee"""

    def test_default_rates(self):
        breakdown = calculate_payment_breakdown(275)

        assert breakdown.permit_fee_cents == 27500
        assert breakdown.platform_fee_cents == 275
        assert breakdown.total_amount_cents == 28636
        assert breakdown.processor_fee_cents == 861

    @pytest.mark.parametrize("fee", [0.5, 25, 99.99, 275, 12345.67])
    def test_municipality_receives_full_fee(self, fee):
        breakdown = calculate_payment_breakdown(fee, platform_fee_percent=1.0, processor_percent=2.9,
                                                processor_fixed_cents=30)
        processor_cut = breakdown.total_amount_cents * 0.029 + 30

        assert breakdown.total_amount_cents - processor_cut >= (
            breakdown.permit_fee_cents + breakdown.platform_fee_cents
        )
        assert breakdown.total_amount_cents == (
            breakdown.permit_fee_cents + breakdown.platform_fee_cents + breakdown.processor_fee_cents
        )

    def test_as_dollars(self):
        dollars = calculate_payment_breakdown(100, platform_fee_percent=0, processor_percent=0,
                                              processor_fixed_cents=0).as_dollars()
        assert dollars == {
            "permit_fee": 100.0,
            "platform_fee": 0.0,
            "processor_fee": 0.0,
            "processing_fees": 0.0,
            "total_amount": 100.0,
        }

    def test_nothing_to_pay(self):
        with pytest.raises(ValidationError, match="no fees"):
            calculate_payment_breakdown(0)


class FakeIntents:
    """Stands in for ``StripeClient.v1.payment_intents``"""

    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.params = None

    async def create_async(self, params):
        if self.error:
            raise self.error
        self.params = params
        return stripe.PaymentIntent.construct_from({"id": "pi_123", "client_secret": "cs", **params}, "sk_test")

    async def retrieve_async(self, intent):
        if self.error:
            raise self.error
        return stripe.PaymentIntent.construct_from(
            {"id": intent, "status": "succeeded", "metadata": {"permit_id": "p1"}}, "sk_test"
        )


def gateway_with(intents: FakeIntents) -> StripeGateway:
    client = SimpleNamespace(v1=SimpleNamespace(payment_intents=intents))
    return StripeGateway(api_key="sk_test", client=client)


class TestStripeGateway:
    async def test_destination_charge_params(self):
        intents = FakeIntents()

        intent = await gateway_with(intents).create_payment_intent(
            28636, "acct_1", 27500, "Permit 1", {"permit_id": "p1"}
        )

        assert intent["id"] == "pi_123"
        assert intents.params["transfer_data"] == {"destination": "acct_1", "amount": 27500}
        assert intents.params["metadata"] == {"permit_id": "p1"}
        assert intents.params["amount"] == 28636

    async def test_retrieved_intent_is_a_plain_dict(self):
        intent = await gateway_with(FakeIntents()).retrieve_payment_intent("pi_9")

        assert intent.get("status") == "succeeded"
        assert intent["metadata"] == {"permit_id": "p1"}

    async def test_processor_errors_surface(self):
        declined = stripe.CardError("Your card was declined.", None, "card_declined")
        with pytest.raises(PaymentGatewayError, match="declined"):
            await gateway_with(FakeIntents(declined)).retrieve_payment_intent("pi_1")

    async def test_unconfigured_gateway(self):
        with pytest.raises(PaymentGatewayError, match="not configured"):
            await StripeGateway(api_key="").retrieve_payment_intent("pi_1")

    def test_sdk_client_uses_configured_key(self):
        client = StripeGateway(api_key="sk_test", api_base="https://stripe.test").client
        assert isinstance(client, stripe.StripeClient)


class TestPermitPayments:
    """Paying permit fees through the connected account"""

    async def priced_permit(self, owner):
        permit_type = await create_permit_type()
        await create_active_schedule(permit_type)
        await PaymentAccount(municipality_id=MUNICIPALITY_ID, stripe_account_id="acct_springfield",
                             is_setup_complete=True).insert()
        return await create_permit(permit_type, owner, estimated_value=15000)

    async def test_intent_transfers_the_permit_fee(self, clean_db):
        owner = applicant_principal()
        permit = await self.priced_permit(owner)
        gateway = FakeGateway()

        response = await PermitService(gateway=gateway).create_payment_intent(permit, owner)

        intent = gateway.created[0]
        assert intent["transfer_data"] == {"destination": "acct_springfield", "amount": 27500}
        assert intent["amount"] == 28636
        assert response.breakdown.total_amount == 286.36

    async def test_payments_need_a_connected_account(self, clean_db):
        owner = applicant_principal()
        permit = await self.priced_permit(owner)
        await PaymentAccount.find({"municipality_id": MUNICIPALITY_ID}).delete()

        with pytest.raises(ValidationError, match="not set up"):
            await PermitService(gateway=FakeGateway()).create_payment_intent(permit, owner)

    async def test_only_the_applicant_pays(self, clean_db):
        permit = await self.priced_permit(applicant_principal("citizen-1"))

        with pytest.raises(AuthorizationError):
            await PermitService(gateway=FakeGateway()).create_payment_intent(permit, applicant_principal("citizen-2"))

    async def test_confirmation_pays_fees_and_submits(self, clean_db, sent_notifications):
        owner = applicant_principal()
        permit = await self.priced_permit(owner)
        service = PermitService(gateway=FakeGateway())
        intent = await service.create_payment_intent(permit, owner)

        permit, submitted = await service.confirm_payment(permit, owner, intent.payment_intent_id)

        assert submitted
        assert permit.status == PermitStatus.SUBMITTED
        assert permit.is_fully_paid
        assert all(f.receipt_number == "pi_1" for f in permit.fees)
        stored = await Permit.get(permit.id)
        assert stored.status == PermitStatus.SUBMITTED
        assert any(n["template_type"] == "permit_status_changed" for n in sent_notifications)

    async def test_unfinished_payment_is_refused(self, clean_db):
        owner = applicant_principal()
        permit = await self.priced_permit(owner)
        service = PermitService(gateway=FakeGateway(status="requires_payment_method"))
        intent = await service.create_payment_intent(permit, owner)

        with pytest.raises(ValidationError, match="not been completed") as raised:
            await service.confirm_payment(permit, owner, intent.payment_intent_id)
        assert raised.value.details["payment_status"] == "requires_payment_method"
        assert permit.status == PermitStatus.DRAFT
