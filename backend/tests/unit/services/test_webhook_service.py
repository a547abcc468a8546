"""Tests for Stripe webhook routing."""

from unittest.mock import MagicMock

import pytest

from fieldsy.core.exceptions import ValidationException
from fieldsy.services.payout_service import PayoutService
from fieldsy.services.subscription_service import SubscriptionService
from fieldsy.services.webhook_service import WebhookService


def _event(event_type, obj):
    return {"type": event_type, "data": {"object": obj}}


@pytest.fixture
def subscription_service():
    return MagicMock(spec=SubscriptionService)


@pytest.fixture
def payout_service():
    return MagicMock(spec=PayoutService)


@pytest.fixture
def webhook_service(db, stripe_mock, clock, subscription_service, payout_service):
    return WebhookService(
        db,
        stripe_service=stripe_mock,
        subscription_service=subscription_service,
        payout_service=payout_service,
        clock=clock,
    )


class TestInvoiceEvents:
    def test_payment_failed_passes_decline_details(self, webhook_service, subscription_service):
        invoice = {
            "subscription": "sub_test",
            "payment_intent": {
                "last_payment_error": {"code": "card_declined", "message": "Declined"}
            },
        }

        result = webhook_service.handle_event(_event("invoice.payment_failed", invoice))

        assert result == {"event_type": "invoice.payment_failed", "handled": True}
        subscription_service.handle_invoice_payment_failed.assert_called_once_with(
            "sub_test", failure_code="card_declined", failure_message="Declined", invoice=invoice
        )

    def test_payment_succeeded_with_expanded_subscription(
        self, webhook_service, subscription_service
    ):
        invoice = {"subscription": {"id": "sub_test"}, "billing_reason": "subscription_cycle"}

        webhook_service.handle_event(_event("invoice.payment_succeeded", invoice))

        subscription_service.handle_invoice_payment_succeeded.assert_called_once_with(
            "sub_test", invoice
        )

    def test_invoice_without_subscription_is_ignored(self, webhook_service, subscription_service):
        result = webhook_service.handle_event(_event("invoice.payment_failed", {"id": "in_1"}))
        assert result["handled"] is False
        subscription_service.handle_invoice_payment_failed.assert_not_called()


class TestSubscriptionAndPayoutEvents:
    def test_subscription_deleted(self, webhook_service, subscription_service):
        result = webhook_service.handle_event(
            _event("customer.subscription.deleted", {"id": "sub_test"})
        )
        assert result["handled"] is True
        subscription_service.handle_subscription_deleted.assert_called_once_with("sub_test")

    def test_unknown_subscription_update(self, webhook_service, subscription_service):
        subscription_service.handle_subscription_updated.return_value = None
        result = webhook_service.handle_event(
            _event("customer.subscription.updated", {"id": "sub_missing"})
        )
        assert result["handled"] is False

    def test_payout_paid_and_failed(self, webhook_service, payout_service):
        webhook_service.handle_event(_event("payout.paid", {"id": "po_1"}))
        payout_service.handle_payout_paid.assert_called_once_with("po_1")

        webhook_service.handle_event(
            _event(
                "payout.failed",
                {"id": "po_2", "failure_code": "account_closed", "failure_message": "Closed"},
            )
        )
        payout_service.handle_payout_failed.assert_called_once_with(
            "po_2", "account_closed", "Closed"
        )

    def test_unknown_event_is_acknowledged(self, webhook_service):
        result = webhook_service.handle_event(_event("customer.created", {"id": "cus_1"}))
        assert result == {"event_type": "customer.created", "handled": False}


class TestAccountUpdated:
    def test_newly_payable_account_flushes_parked_payouts(
        self, webhook_service, payout_service, field_owner, make_stripe_account
    ):
        account = make_stripe_account(field_owner, payable=False)

        result = webhook_service.handle_event(
            _event(
                "account.updated",
                {
                    "id": account.stripe_account_id,
                    "charges_enabled": True,
                    "payouts_enabled": True,
                    "details_submitted": True,
                    "requirements": {"currently_due": []},
                },
            )
        )

        assert result["handled"] is True
        assert account.is_payable
        payout_service.process_pending_payouts_for_owner.assert_called_once_with(field_owner.id)

    def test_still_restricted_account(
        self, webhook_service, payout_service, field_owner, make_stripe_account
    ):
        account = make_stripe_account(field_owner, payable=False)

        webhook_service.handle_event(
            _event(
                "account.updated",
                {
                    "id": account.stripe_account_id,
                    "charges_enabled": True,
                    "payouts_enabled": False,
                    "requirements": {"currently_due": ["external_account"]},
                },
            )
        )

        assert account.requirements_due == ["external_account"]
        payout_service.process_pending_payouts_for_owner.assert_not_called()

    def test_unknown_account(self, webhook_service):
        result = webhook_service.handle_event(_event("account.updated", {"id": "acct_nobody"}))
        assert result["handled"] is False


class TestSignature:
    def test_handle_verifies_before_routing(self, webhook_service, stripe_mock, payout_service):
        stripe_mock.construct_event.return_value = _event("payout.paid", {"id": "po_1"})

        result = webhook_service.handle(b"{}", "t=1,v1=abc")

        stripe_mock.construct_event.assert_called_once_with(b"{}", "t=1,v1=abc")
        assert result["handled"] is True

    def test_bad_signature_propagates(self, webhook_service, stripe_mock, payout_service):
        stripe_mock.construct_event.side_effect = ValidationException(
            "Invalid webhook signature", code="INVALID_SIGNATURE"
        )
        with pytest.raises(ValidationException):
            webhook_service.handle(b"{}", "bad")
        payout_service.handle_payout_paid.assert_not_called()
