# backend/fieldsy/services/webhook_service.py
"""
Stripe webhook dispatch.

Verifies the signature through ``StripeService`` and routes each event to
the engine that owns it. Unknown events are acknowledged and ignored so
Stripe does not keep retrying them.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ..core.clock import Clock
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .payout_service import PayoutService
from .stripe_service import StripeService, stripe_value
from .subscription_service import SubscriptionService

logger = logging.getLogger(__name__)


class WebhookService(BaseService):
    def __init__(
        self,
        db: Session,
        *,
        stripe_service: StripeService,
        subscription_service: SubscriptionService,
        payout_service: PayoutService,
        clock: Optional[Clock] = None,
    ):
        super().__init__(db, clock)
        self.stripe_service = stripe_service
        self.subscription_service = subscription_service
        self.payout_service = payout_service
        self.stripe_account_repository = RepositoryFactory.create_stripe_account_repository(db)

    @BaseService.measure_operation("handle_webhook")
    def handle(self, payload: bytes | str, signature: str) -> Dict[str, Any]:
        """
        Verify and process a raw webhook request body.

        Raises:
            ValidationException: invalid signature or payload
        """
        event = self.stripe_service.construct_event(payload, signature)
        return self.handle_event(event)

    def handle_event(self, event: Any) -> Dict[str, Any]:
        """Process an already-verified event."""
        event_type = stripe_value(event, "type", "") or ""
        obj = stripe_value(stripe_value(event, "data"), "object")
        self.logger.info(f"Processing webhook event: {event_type}")

        if event_type.startswith("invoice."):
            handled = self._handle_invoice_event(event_type, obj)
        elif event_type.startswith("customer.subscription."):
            handled = self._handle_subscription_event(event_type, obj)
        elif event_type.startswith("payout."):
            handled = self._handle_payout_event(event_type, obj)
        elif event_type == "account.updated":
            handled = self._handle_account_updated(obj)
        elif event_type == "charge.refunded":
            self.logger.info(
                f"Charge {stripe_value(obj, 'id')} refunded "
                f"(payment_intent={stripe_value(obj, 'payment_intent')})"
            )
            handled = True
        else:
            self.logger.info(f"Unhandled webhook event type: {event_type}")
            handled = False

        return {"event_type": event_type, "handled": handled}

    def _handle_invoice_event(self, event_type: str, invoice: Any) -> bool:
        subscription_id = stripe_value(invoice, "subscription")
        if not subscription_id:
            return False
        if not isinstance(subscription_id, str):
            subscription_id = stripe_value(subscription_id, "id")

        if event_type == "invoice.payment_succeeded":
            self.subscription_service.handle_invoice_payment_succeeded(subscription_id, invoice)
            return True
        if event_type == "invoice.payment_failed":
            last_error = stripe_value(stripe_value(invoice, "payment_intent"), "last_payment_error")
            self.subscription_service.handle_invoice_payment_failed(
                subscription_id,
                failure_code=stripe_value(last_error, "code"),
                failure_message=stripe_value(last_error, "message"),
                invoice=invoice,
            )
            return True
        return False

    def _handle_subscription_event(self, event_type: str, stripe_subscription: Any) -> bool:
        if event_type == "customer.subscription.updated":
            updated = self.subscription_service.handle_subscription_updated(stripe_subscription)
            return updated is not None
        if event_type == "customer.subscription.deleted":
            subscription = self.subscription_service.handle_subscription_deleted(
                stripe_value(stripe_subscription, "id")
            )
            return subscription is not None
        return False

    def _handle_payout_event(self, event_type: str, payout: Any) -> bool:
        payout_id = stripe_value(payout, "id")
        if event_type == "payout.paid":
            return self.payout_service.handle_payout_paid(payout_id) is not None
        if event_type == "payout.failed":
            failure_code = stripe_value(payout, "failure_code")
            failure_message = stripe_value(payout, "failure_message")
            self.logger.error(
                f"Payout failed: {payout_id} code={failure_code} message={failure_message}"
            )
            record = self.payout_service.handle_payout_failed(
                payout_id, failure_code, failure_message
            )
            return record is not None
        return False

    def _handle_account_updated(self, account_data: Any) -> bool:
        account = self.stripe_account_repository.get_by_stripe_id(stripe_value(account_data, "id"))
        if account is None:
            self.logger.info(
                f"account.updated for unknown account {stripe_value(account_data, 'id')}"
            )
            return False

        was_payable = account.is_payable
        requirements = stripe_value(account_data, "requirements")
        with self.transaction():
            self.stripe_account_repository.update(
                account,
                charges_enabled=bool(stripe_value(account_data, "charges_enabled", False)),
                payouts_enabled=bool(stripe_value(account_data, "payouts_enabled", False)),
                details_submitted=bool(stripe_value(account_data, "details_submitted", False)),
                requirements_due=list(stripe_value(requirements, "currently_due", []) or []),
            )

        if account.is_payable and not was_payable:
            self.logger.info(f"Account {account.stripe_account_id} onboarding completed")
            self.payout_service.process_pending_payouts_for_owner(account.user_id)
        return True
