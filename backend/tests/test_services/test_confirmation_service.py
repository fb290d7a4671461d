"""Tests for checkout confirmation — signature, provider verification, activation."""

from datetime import datetime
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from factories import KEY_SECRET, create_user, create_user_with_subscription
from subscription_billing.billing.entities import PaymentEntity
from subscription_billing.billing.errors import (
    InvalidSignature,
    PaymentVerificationFailed,
    ProviderUnavailable,
    SubscriptionNotFound,
)
from subscription_billing.billing.periods import add_cycles, from_unix
from subscription_billing.billing.signatures import sign
from subscription_billing.services import payment_ledger
from subscription_billing.services.confirmation_service import confirm_payment

NOW = datetime(2025, 10, 15, 12, 0, 0)
FETCH_PAYMENT = "subscription_billing.billing.razorpay_client.fetch_payment"


def _signature(subscription_id: str = "sub_1", payment_id: str = "pay_1") -> str:
    return sign(KEY_SECRET, f"{subscription_id}|{payment_id}")


class TestConfirmPayment:
    async def test_captured_payment_activates(self, db_session: AsyncSession):
        _, subscription = await create_user_with_subscription(db_session, status="created", provider_subscription_id="sub_1")
        fetched = PaymentEntity(id="pay_1", status="captured", captured_at=1760000000, amount=5900, method="card")

        with patch(FETCH_PAYMENT, new_callable=AsyncMock, return_value=fetched):
            result = await confirm_payment(db_session, "pay_1", "sub_1", _signature(), NOW)

        assert result.id == subscription.id
        assert result.status == "active"
        assert result.period_end == add_cycles(from_unix(1760000000))
        payments = await payment_ledger.find_by_provider_subscription_id(db_session, "sub_1")
        assert len(payments) == 1
        assert payments[0].received_via_webhook is False
        assert payments[0].subscription_id == subscription.id

    async def test_authorized_payment_accepted(self, db_session: AsyncSession):
        await create_user_with_subscription(db_session, status="created", provider_subscription_id="sub_1")
        fetched = PaymentEntity(id="pay_1", status="authorized", created_at=1760000000)

        with patch(FETCH_PAYMENT, new_callable=AsyncMock, return_value=fetched):
            result = await confirm_payment(db_session, "pay_1", "sub_1", _signature(), NOW)

        assert result.status == "active"
        payments = await payment_ledger.find_by_provider_subscription_id(db_session, "sub_1")
        assert payments[0].status == "authorized"

    async def test_bad_signature(self, db_session: AsyncSession):
        await create_user_with_subscription(db_session, status="created", provider_subscription_id="sub_1")
        with patch(FETCH_PAYMENT, new_callable=AsyncMock) as fetch:
            with pytest.raises(InvalidSignature):
                await confirm_payment(db_session, "pay_1", "sub_1", _signature(payment_id="pay_other"), NOW)
        fetch.assert_not_awaited()

    async def test_missing_key_secret_rejects(self, db_session: AsyncSession, billing_settings, monkeypatch):
        monkeypatch.setattr(billing_settings, "razorpay_key_secret", "")
        with pytest.raises(InvalidSignature):
            await confirm_payment(db_session, "pay_1", "sub_1", sign("", "sub_1|pay_1"), NOW)

    async def test_unknown_subscription(self, db_session: AsyncSession):
        with pytest.raises(SubscriptionNotFound):
            await confirm_payment(db_session, "pay_1", "sub_1", _signature(), NOW)

    @pytest.mark.parametrize("status", ["created", "failed", "refunded"])
    async def test_unpaid_status_rejected(self, db_session: AsyncSession, status):
        _, subscription = await create_user_with_subscription(db_session, status="created", provider_subscription_id="sub_1")
        with patch(FETCH_PAYMENT, new_callable=AsyncMock, return_value=PaymentEntity(id="pay_1", status=status)):
            with pytest.raises(PaymentVerificationFailed):
                await confirm_payment(db_session, "pay_1", "sub_1", _signature(), NOW)
        assert subscription.status == "created"
        assert not await payment_ledger.exists(db_session, "pay_1")

    async def test_provider_unavailable(self, db_session: AsyncSession):
        _, subscription = await create_user_with_subscription(db_session, status="created", provider_subscription_id="sub_1")
        with patch(FETCH_PAYMENT, new_callable=AsyncMock, side_effect=ProviderUnavailable("timed out")):
            with pytest.raises(ProviderUnavailable):
                await confirm_payment(db_session, "pay_1", "sub_1", _signature(), NOW)
        assert subscription.status == "created"

    async def test_subscription_owned_by_another_user(self, db_session: AsyncSession):
        owner, subscription = await create_user_with_subscription(
            db_session, status="created", provider_subscription_id="sub_1"
        )
        other = await create_user(db_session)

        with patch(FETCH_PAYMENT, new_callable=AsyncMock) as fetch:
            with pytest.raises(SubscriptionNotFound):
                await confirm_payment(db_session, "pay_1", "sub_1", _signature(), NOW, user_id=other.id)
        fetch.assert_not_called()
        assert subscription.status == "created"

        fetched = PaymentEntity(id="pay_1", status="captured", captured_at=1760000000)
        with patch(FETCH_PAYMENT, new_callable=AsyncMock, return_value=fetched):
            result = await confirm_payment(db_session, "pay_1", "sub_1", _signature(), NOW, user_id=owner.id)
        assert result.status == "active"

    async def test_repeat_confirmation_is_idempotent(self, db_session: AsyncSession):
        await create_user_with_subscription(db_session, status="created", provider_subscription_id="sub_1")
        fetched = PaymentEntity(id="pay_1", status="captured", captured_at=1760000000)

        with patch(FETCH_PAYMENT, new_callable=AsyncMock, return_value=fetched):
            first = await confirm_payment(db_session, "pay_1", "sub_1", _signature(), NOW)
            first_end = first.period_end
            second = await confirm_payment(db_session, "pay_1", "sub_1", _signature(), NOW)

        assert second.period_end == first_end
        assert len(await payment_ledger.find_by_provider_subscription_id(db_session, "sub_1")) == 1
