"""Tests for reconciliation sync and local drift correction."""

import uuid
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from factories import create_user_with_subscription, reload
from subscription_billing.billing.entities import PaymentEntity, SubscriptionEntity
from subscription_billing.billing.errors import ProviderUnavailable
from subscription_billing.billing.periods import add_cycles, from_unix
from subscription_billing.models.subscription import Subscription
from subscription_billing.services import payment_ledger, reconciliation_service
from subscription_billing.services.payment_ledger import PaymentObservation

NOW = datetime(2025, 10, 15, 12, 0, 0)
FETCH_SUBSCRIPTION = "subscription_billing.billing.razorpay_client.fetch_subscription"
LIST_PAYMENTS = "subscription_billing.billing.razorpay_client.list_payments_for_subscription"


def _remote(status: str, **fields) -> SubscriptionEntity:
    return SubscriptionEntity(id="sub_1", status=status, **fields)


async def _record(db: AsyncSession, subscription, status: str = "captured") -> None:
    await payment_ledger.upsert_by_provider_payment_id(
        db,
        PaymentObservation(
            provider_payment_id="pay_1",
            status=status,
            provider_subscription_id="sub_1",
            paid_at=NOW - timedelta(days=2),
        ),
        subscription=subscription,
        now=NOW,
    )


class TestCorrectDrift:
    async def test_downgrades_unbacked_active(self, db_session: AsyncSession):
        _, subscription = await create_user_with_subscription(
            db_session, status="active", provider_subscription_id="sub_1", period_end=NOW + timedelta(days=10)
        )
        result = await reconciliation_service.correct_drift(db_session, subscription)
        assert result.status == "created"
        assert result.period_end is None

    async def test_backed_active_untouched(self, db_session: AsyncSession):
        end = NOW + timedelta(days=10)
        _, subscription = await create_user_with_subscription(
            db_session, status="active", provider_subscription_id="sub_1", period_end=end
        )
        await _record(db_session, subscription)
        result = await reconciliation_service.correct_drift(db_session, subscription)
        assert result.status == "active"
        assert result.period_end == end

    async def test_non_active_untouched(self, db_session: AsyncSession):
        _, subscription = await create_user_with_subscription(db_session, status="past_due")
        result = await reconciliation_service.correct_drift(db_session, subscription)
        assert result.status == "past_due"


class TestSyncSubscription:
    async def test_without_provider_link_checks_locally(self, db_session: AsyncSession):
        _, subscription = await create_user_with_subscription(
            db_session, status="active", period_end=NOW + timedelta(days=10)
        )
        with patch(FETCH_SUBSCRIPTION, new_callable=AsyncMock) as fetch:
            result = await reconciliation_service.sync_subscription(db_session, subscription, NOW)
        fetch.assert_not_awaited()
        assert result.status == "expired"

    async def test_provider_active_without_payment_downgrades(self, db_session: AsyncSession):
        _, subscription = await create_user_with_subscription(
            db_session, status="active", provider_subscription_id="sub_1", period_end=NOW + timedelta(days=10)
        )
        with patch(FETCH_SUBSCRIPTION, new_callable=AsyncMock, return_value=_remote("active")), patch(
            LIST_PAYMENTS, new_callable=AsyncMock, return_value=[]
        ):
            result = await reconciliation_service.sync_subscription(db_session, subscription, NOW)
        assert result.status == "created"
        assert result.period_end is None

    async def test_recovers_missed_payment(self, db_session: AsyncSession):
        _, subscription = await create_user_with_subscription(db_session, status="created", provider_subscription_id="sub_1")
        paid = PaymentEntity(id="pay_missed", status="captured", captured_at=1760000000, method="card")
        with patch(FETCH_SUBSCRIPTION, new_callable=AsyncMock, return_value=_remote("active")), patch(
            LIST_PAYMENTS,
            new_callable=AsyncMock,
            return_value=[PaymentEntity(id="pay_failed", status="failed"), paid],
        ):
            result = await reconciliation_service.sync_subscription(db_session, subscription, NOW)

        assert result.status == "active"
        assert result.period_end == add_cycles(from_unix(1760000000))
        payments = await payment_ledger.find_by_provider_subscription_id(db_session, "sub_1")
        assert [p.provider_payment_id for p in payments] == ["pay_missed"]
        assert payments[0].received_via_webhook is False

    async def test_pending_with_payment_activates(self, db_session: AsyncSession):
        _, subscription = await create_user_with_subscription(db_session, status="created", provider_subscription_id="sub_1")
        await _record(db_session, subscription)
        with patch(FETCH_SUBSCRIPTION, new_callable=AsyncMock, return_value=_remote("created")):
            result = await reconciliation_service.sync_subscription(db_session, subscription, NOW)

        paid_at = NOW - timedelta(days=2)
        assert result.status == "active"
        assert result.period_start == paid_at
        assert result.period_end == add_cycles(paid_at)

    async def test_pending_without_payment_stays_created(self, db_session: AsyncSession):
        _, subscription = await create_user_with_subscription(db_session, status="created", provider_subscription_id="sub_1")
        with patch(FETCH_SUBSCRIPTION, new_callable=AsyncMock, return_value=_remote("created")), patch(
            LIST_PAYMENTS, new_callable=AsyncMock, return_value=[]
        ):
            result = await reconciliation_service.sync_subscription(db_session, subscription, NOW)
        assert result.status == "created"

    async def test_halted_is_past_due(self, db_session: AsyncSession):
        end = NOW + timedelta(days=3)
        _, subscription = await create_user_with_subscription(
            db_session, status="active", provider_subscription_id="sub_1", period_end=end
        )
        with patch(FETCH_SUBSCRIPTION, new_callable=AsyncMock, return_value=_remote("halted")):
            result = await reconciliation_service.sync_subscription(db_session, subscription, NOW)
        assert result.status == "past_due"
        assert result.period_end == end

    @pytest.mark.parametrize("remote_status", ["cancelled", "completed", "expired", "paused"])
    async def test_terminal_statuses_cancel(self, db_session: AsyncSession, remote_status):
        _, subscription = await create_user_with_subscription(db_session, status="active", provider_subscription_id="sub_1")
        with patch(FETCH_SUBSCRIPTION, new_callable=AsyncMock, return_value=_remote(remote_status)):
            result = await reconciliation_service.sync_subscription(db_session, subscription, NOW)
        assert result.status == "cancelled"
        assert result.cancelled_at == NOW
        assert result.cancel_reason == f"Razorpay status {remote_status}"

    async def test_cancelled_uses_remote_timestamp(self, db_session: AsyncSession):
        _, subscription = await create_user_with_subscription(db_session, status="active", provider_subscription_id="sub_1")
        remote = _remote("cancelled", cancelled_at=1760400000, cancel_reason="customer request")
        with patch(FETCH_SUBSCRIPTION, new_callable=AsyncMock, return_value=remote):
            result = await reconciliation_service.sync_subscription(db_session, subscription, NOW)
        assert result.cancelled_at == from_unix(1760400000)
        assert result.cancel_reason == "customer request"

    async def test_unknown_status_leaves_record(self, db_session: AsyncSession):
        _, subscription = await create_user_with_subscription(db_session, status="created", provider_subscription_id="sub_1")
        with patch(FETCH_SUBSCRIPTION, new_callable=AsyncMock, return_value=_remote("on_hold_forever")):
            result = await reconciliation_service.sync_subscription(db_session, subscription, NOW)
        assert result.status == "created"

    async def test_provider_failure_changes_nothing(self, db_session: AsyncSession):
        _, subscription = await create_user_with_subscription(
            db_session, status="active", provider_subscription_id="sub_1", period_end=NOW + timedelta(days=10)
        )
        with patch(FETCH_SUBSCRIPTION, new_callable=AsyncMock, side_effect=ProviderUnavailable("timeout")):
            with pytest.raises(ProviderUnavailable):
                await reconciliation_service.sync_subscription(db_session, subscription, NOW)
        assert subscription.status == "active"

    async def test_running_twice_converges(self, db_session: AsyncSession):
        _, subscription = await create_user_with_subscription(db_session, status="created", provider_subscription_id="sub_1")
        paid = PaymentEntity(id="pay_missed", status="captured", captured_at=1760000000)
        with patch(FETCH_SUBSCRIPTION, new_callable=AsyncMock, return_value=_remote("active")), patch(
            LIST_PAYMENTS, new_callable=AsyncMock, return_value=[paid]
        ):
            first = await reconciliation_service.sync_subscription(db_session, subscription, NOW)
            first_end = first.period_end
            second = await reconciliation_service.sync_subscription(db_session, subscription, NOW)

        assert second.status == "active"
        assert second.period_end == first_end


class TestRunDriftCheck:
    async def test_background_check_commits_downgrade(self, db_session: AsyncSession, session_factory):
        _, subscription = await create_user_with_subscription(
            db_session, status="active", provider_subscription_id="sub_1", period_end=NOW + timedelta(days=10)
        )
        await reconciliation_service.run_drift_check(subscription.id)

        fresh = await reload(session_factory, Subscription, id=subscription.id)
        assert fresh.status == "created"

    async def test_missing_subscription_is_noop(self, session_factory):
        await reconciliation_service.run_drift_check(uuid.uuid4())
