"""Tests for webhook envelope parsing, Razorpay entities, and notes coercion."""

import json

import pytest

from factories import payment_entity, subscription_entity, webhook_body
from subscription_billing.billing.entities import PaymentEntity
from subscription_billing.billing.events import (
    IncompleteEvent,
    PaymentCaptured,
    PaymentFailed,
    SubscriptionActivated,
    SubscriptionCancelled,
    SubscriptionCharged,
    SubscriptionPaused,
    SubscriptionResumed,
    UnknownEvent,
    parse_event,
)
from subscription_billing.billing.notes import coerce_notes


def _envelope(event: str, **entities) -> dict:
    return json.loads(webhook_body(event, **entities))


class TestParseEvent:
    def test_payment_captured(self):
        event = parse_event(_envelope("payment.captured", payment=payment_entity()))
        assert isinstance(event, PaymentCaptured)
        assert event.name == "payment.captured"
        assert event.payment.id == "pay_test_001"
        assert event.payment.subscription_id == "sub_test_001"
        assert event.payment.amount == 5900

    def test_payment_failed(self):
        event = parse_event(_envelope("payment.failed", payment=payment_entity(status="failed", captured_at=None)))
        assert isinstance(event, PaymentFailed)

    @pytest.mark.parametrize(
        ("name", "variant"),
        [
            ("subscription.activated", SubscriptionActivated),
            ("subscription.cancelled", SubscriptionCancelled),
            ("subscription.paused", SubscriptionPaused),
            ("subscription.resumed", SubscriptionResumed),
        ],
    )
    def test_subscription_events(self, name, variant):
        event = parse_event(_envelope(name, subscription=subscription_entity()))
        assert isinstance(event, variant)
        assert event.subscription.id == "sub_test_001"
        assert event.name == name

    def test_charged_with_embedded_payment(self):
        event = parse_event(
            _envelope("subscription.charged", subscription=subscription_entity(), payment=payment_entity())
        )
        assert isinstance(event, SubscriptionCharged)
        assert event.payment is not None
        assert event.payment.id == "pay_test_001"

    def test_charged_without_payment(self):
        event = parse_event(_envelope("subscription.charged", subscription=subscription_entity()))
        assert isinstance(event, SubscriptionCharged)
        assert event.payment is None

    def test_charged_payment_without_id_dropped(self):
        event = parse_event(
            _envelope("subscription.charged", subscription=subscription_entity(), payment={"status": "captured"})
        )
        assert event.payment is None

    def test_unknown_event(self):
        event = parse_event({"event": "invoice.paid", "payload": {}})
        assert event == UnknownEvent(name="invoice.paid")

    def test_unknown_event_needs_no_payload(self):
        assert isinstance(parse_event({"event": "refund.created"}), UnknownEvent)

    @pytest.mark.parametrize(
        "envelope",
        [
            [],
            {},
            {"event": ""},
            {"event": 42, "payload": {}},
            {"event": "payment.captured"},
            {"event": "payment.captured", "payload": []},
            {"event": "payment.captured", "payload": {}},
            {"event": "payment.captured", "payload": {"payment": {"entity": {"status": "captured"}}}},
            {"event": "subscription.activated", "payload": {"subscription": {"entity": {}}}},
            {"event": "subscription.charged", "payload": {"payment": {"entity": {"id": "pay_1"}}}},
        ],
    )
    def test_incomplete_envelopes(self, envelope):
        with pytest.raises(IncompleteEvent):
            parse_event(envelope)

    def test_invalid_entity_field_types(self):
        raw = payment_entity(amount="not-a-number")
        with pytest.raises(IncompleteEvent):
            parse_event(_envelope("payment.captured", payment=raw))


class TestEntities:
    def test_unknown_fields_ignored(self):
        payment = PaymentEntity.model_validate({"id": "pay_1", "acquirer_data": {"rrn": "123"}, "vpa": "x@upi"})
        assert payment.id == "pay_1"

    def test_nested_error_flattened(self):
        payment = PaymentEntity.model_validate(
            {"id": "pay_1", "status": "failed", "error": {"code": "BAD_REQUEST_ERROR", "description": "Declined"}}
        )
        assert payment.error_code == "BAD_REQUEST_ERROR"
        assert payment.error_description == "Declined"

    def test_top_level_error_fields_win(self):
        payment = PaymentEntity.model_validate(
            {
                "id": "pay_1",
                "error_code": "GATEWAY_ERROR",
                "error": {"code": "BAD_REQUEST_ERROR"},
            }
        )
        assert payment.error_code == "GATEWAY_ERROR"

    def test_empty_list_notes(self):
        assert PaymentEntity.model_validate({"id": "pay_1", "notes": []}).notes == {}


class TestCoerceNotes:
    def test_keeps_scalars(self):
        raw = {"externalUserId": "auth0|abc", "count": 3, "ratio": 0.5, "flag": True, "empty": None}
        assert coerce_notes(raw) == raw

    def test_drops_nested_values(self):
        assert coerce_notes({"keep": "yes", "nested": {"a": 1}, "list": [1, 2]}) == {"keep": "yes"}

    @pytest.mark.parametrize("raw", [None, [], "text", 12, ["a", "b"]])
    def test_non_object_yields_empty(self, raw):
        assert coerce_notes(raw) == {}

    def test_keys_stringified(self):
        assert coerce_notes({1: "one"}) == {"1": "one"}
