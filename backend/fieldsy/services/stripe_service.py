"""
Stripe Service for the Fieldsy booking engine.

Thin gateway over the Stripe SDK. Every money movement the engine performs
(transfers to connected accounts, transfer reversals, refunds, connected
account payouts, recurring subscriptions) goes through this class so the
rest of the code never imports ``stripe`` directly and tests can swap the
whole gateway for a ``MagicMock(spec=StripeService)``.

Error handling:
- Every ``stripe.StripeError`` is logged and re-raised as
  ``ExternalProcessorException`` carrying the processor error code
- Webhook signature failures become ``ValidationException``

Amounts passed in and out are integer minor units (pence).
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session
import stripe

from ..core.clock import Clock
from ..core.config import Settings, settings as default_settings
from ..core.exceptions import ExternalProcessorException, ServiceException, ValidationException
from .base import BaseService

logger: logging.Logger = logging.getLogger(__name__)


def stripe_value(obj: Any, key: str, default: Any = None) -> Any:
    """Read a field from a Stripe object or a plain dict."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def processor_error_code(error: stripe.StripeError) -> Optional[str]:
    """Prefer the card decline code, then the API error code."""
    decline_code = getattr(error, "decline_code", None)
    if decline_code:
        return str(decline_code)
    code = getattr(error, "code", None)
    return str(code) if code else None


class StripeService(BaseService):
    """
    Service for all Stripe API interactions.

    Business rules (when to transfer, how much to refund) live in the payout,
    refund and subscription services; this class only talks to Stripe.
    """

    def __init__(
        self,
        db: Session,
        *,
        config: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ):
        super().__init__(db, clock)
        self.config = config or default_settings
        self.currency = self.config.stripe_currency

        self.stripe_configured = False
        if self.config.stripe_configured:
            stripe.api_key = self.config.stripe_secret_key.get_secret_value()
            stripe.max_network_retries = self.config.stripe_max_network_retries
            self.stripe_configured = True
            self.logger.info("Stripe service configured successfully")
        else:
            self.logger.warning("Stripe secret key not configured - API calls will be rejected")

    def _check_stripe_configured(self) -> None:
        if not self.stripe_configured:
            raise ServiceException(
                "Stripe service not configured. "
                "Please check STRIPE_SECRET_KEY environment variable."
            )

    def _call(self, operation: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        self._check_stripe_configured()
        try:
            return func(*args, **kwargs)
        except stripe.StripeError as e:
            code = processor_error_code(e)
            self.logger.error(f"Stripe error during {operation}: {str(e)} (code={code})")
            raise ExternalProcessorException(
                f"Stripe {operation} failed: {getattr(e, 'user_message', None) or str(e)}",
                processor_code=code,
                operation=operation,
            ) from e

    # ------------------------------------------------------------------ #
    # Charges and balance
    # ------------------------------------------------------------------ #

    @BaseService.measure_operation("stripe_retrieve_charge")
    def retrieve_charge(self, charge_id: str) -> Any:
        return self._call("retrieve_charge", stripe.Charge.retrieve, charge_id)

    @BaseService.measure_operation("stripe_retrieve_balance_transaction")
    def retrieve_balance_transaction(self, balance_transaction_id: str) -> Any:
        return self._call(
            "retrieve_balance_transaction",
            stripe.BalanceTransaction.retrieve,
            balance_transaction_id,
        )

    @BaseService.measure_operation("stripe_retrieve_balance")
    def retrieve_balance(self, stripe_account: Optional[str] = None) -> Any:
        """Platform balance, or a connected account's when ``stripe_account`` is set."""
        kwargs: Dict[str, Any] = {}
        if stripe_account:
            kwargs["stripe_account"] = stripe_account
        return self._call("retrieve_balance", stripe.Balance.retrieve, **kwargs)

    # ------------------------------------------------------------------ #
    # Transfers and payouts
    # ------------------------------------------------------------------ #

    @BaseService.measure_operation("stripe_create_transfer")
    def create_transfer(
        self,
        *,
        amount: int,
        destination: str,
        transfer_group: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Any:
        params: Dict[str, Any] = {
            "amount": amount,
            "currency": self.currency,
            "destination": destination,
        }
        if transfer_group:
            params["transfer_group"] = transfer_group
        if description:
            params["description"] = description
        if metadata:
            params["metadata"] = metadata
        transfer = self._call(
            "create_transfer", stripe.Transfer.create, idempotency_key=idempotency_key, **params
        )
        self.logger.info(
            "Created transfer",
            extra={
                "transfer_id": stripe_value(transfer, "id"),
                "destination": destination,
                "amount": amount,
            },
        )
        return transfer

    @BaseService.measure_operation("stripe_create_transfer_reversal")
    def create_transfer_reversal(
        self,
        transfer_id: str,
        *,
        amount: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Any:
        """Reverse all or part of a transfer back to the platform balance."""
        kwargs: Dict[str, Any] = {}
        if amount is not None:
            kwargs["amount"] = amount
        if metadata:
            kwargs["metadata"] = metadata
        reversal = self._call(
            "create_transfer_reversal",
            stripe.Transfer.create_reversal,
            transfer_id,
            idempotency_key=idempotency_key,
            **kwargs,
        )
        reversed_amount = stripe_value(reversal, "amount")
        if amount is not None and reversed_amount is not None and reversed_amount < amount:
            self.logger.warning(
                f"Partial reversal for transfer {transfer_id}: "
                f"requested={amount} reversed={reversed_amount}"
            )
        return reversal

    @BaseService.measure_operation("stripe_create_payout")
    def create_payout(
        self,
        *,
        amount: int,
        stripe_account: str,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Pay out from a connected account's balance to its bank account."""
        params: Dict[str, Any] = {"amount": amount, "currency": self.currency}
        if description:
            params["description"] = description
        if metadata:
            params["metadata"] = metadata
        return self._call(
            "create_payout", stripe.Payout.create, stripe_account=stripe_account, **params
        )

    # ------------------------------------------------------------------ #
    # Refunds
    # ------------------------------------------------------------------ #

    @BaseService.measure_operation("stripe_create_refund")
    def create_refund(
        self,
        *,
        payment_intent: str,
        amount: Optional[int] = None,
        reason: str = "requested_by_customer",
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Any:
        params: Dict[str, Any] = {"payment_intent": payment_intent, "reason": reason}
        if amount is not None:
            params["amount"] = amount
        if metadata:
            params["metadata"] = metadata
        return self._call(
            "create_refund", stripe.Refund.create, idempotency_key=idempotency_key, **params
        )

    @BaseService.measure_operation("stripe_retrieve_refund")
    def retrieve_refund(self, refund_id: str) -> Any:
        return self._call("retrieve_refund", stripe.Refund.retrieve, refund_id)

    @BaseService.measure_operation("stripe_cancel_refund")
    def cancel_refund(self, refund_id: str) -> Any:
        return self._call("cancel_refund", stripe.Refund.cancel, refund_id)

    # ------------------------------------------------------------------ #
    # Customers and recurring billing
    # ------------------------------------------------------------------ #

    @BaseService.measure_operation("stripe_create_customer")
    def create_customer(
        self, *, email: str, name: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None
    ) -> Any:
        return self._call(
            "create_customer",
            stripe.Customer.create,
            email=email,
            name=name,
            metadata=metadata or {},
        )

    @BaseService.measure_operation("stripe_attach_payment_method")
    def attach_payment_method(self, payment_method_id: str, customer_id: str) -> Any:
        """Attach a payment method and make it the customer's invoice default."""
        payment_method = self._call(
            "attach_payment_method",
            stripe.PaymentMethod.attach,
            payment_method_id,
            customer=customer_id,
        )
        self._call(
            "update_customer",
            stripe.Customer.modify,
            customer_id,
            invoice_settings={"default_payment_method": payment_method_id},
        )
        return payment_method

    @BaseService.measure_operation("stripe_create_product")
    def create_product(self, *, name: str, metadata: Optional[Dict[str, Any]] = None) -> Any:
        return self._call(
            "create_product", stripe.Product.create, name=name, metadata=metadata or {}
        )

    @BaseService.measure_operation("stripe_create_price")
    def create_price(
        self, *, product_id: str, unit_amount: int, interval: str, interval_count: int = 1
    ) -> Any:
        return self._call(
            "create_price",
            stripe.Price.create,
            product=product_id,
            unit_amount=unit_amount,
            currency=self.currency,
            recurring={"interval": interval, "interval_count": interval_count},
        )

    @BaseService.measure_operation("stripe_create_subscription")
    def create_subscription(
        self,
        *,
        customer_id: str,
        price_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        default_payment_method: Optional[str] = None,
    ) -> Any:
        params: Dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": price_id}],
            "payment_behavior": "default_incomplete",
            "payment_settings": {"save_default_payment_method": "on_subscription"},
            "expand": ["latest_invoice.payment_intent"],
            "metadata": metadata or {},
        }
        if default_payment_method:
            params["default_payment_method"] = default_payment_method
        return self._call("create_subscription", stripe.Subscription.create, **params)

    @BaseService.measure_operation("stripe_modify_subscription")
    def modify_subscription(self, subscription_id: str, **params: Any) -> Any:
        return self._call(
            "modify_subscription", stripe.Subscription.modify, subscription_id, **params
        )

    @BaseService.measure_operation("stripe_cancel_subscription")
    def cancel_subscription(self, subscription_id: str) -> Any:
        return self._call("cancel_subscription", stripe.Subscription.cancel, subscription_id)

    @BaseService.measure_operation("stripe_retrieve_subscription")
    def retrieve_subscription(self, subscription_id: str) -> Any:
        return self._call(
            "retrieve_subscription", stripe.Subscription.retrieve, subscription_id
        )

    @BaseService.measure_operation("stripe_list_open_invoices")
    def list_open_invoices(self, subscription_id: str, limit: int = 1) -> List[Any]:
        result = self._call(
            "list_invoices",
            stripe.Invoice.list,
            subscription=subscription_id,
            status="open",
            limit=limit,
        )
        return list(stripe_value(result, "data", []) or [])

    @BaseService.measure_operation("stripe_pay_invoice")
    def pay_invoice(self, invoice_id: str) -> Any:
        return self._call("pay_invoice", stripe.Invoice.pay, invoice_id)

    # ------------------------------------------------------------------ #
    # Webhooks
    # ------------------------------------------------------------------ #

    def construct_event(self, payload: bytes | str, signature: str) -> Any:
        """
        Verify a webhook signature and build the event.

        Raises:
            ValidationException: bad signature or unparsable payload
            ServiceException: webhook secret not configured
        """
        secret = self.config.webhook_secret_value()
        if not secret:
            raise ServiceException("Webhook secret not configured")
        try:
            return stripe.Webhook.construct_event(
                payload.encode("utf-8") if isinstance(payload, str) else payload,
                signature,
                secret,
            )
        except stripe.SignatureVerificationError as e:
            self.logger.warning(f"Invalid webhook signature: {str(e)}")
            raise ValidationException("Invalid webhook signature", code="INVALID_SIGNATURE")
        except ValueError as e:
            self.logger.warning(f"Invalid webhook payload: {str(e)}")
            raise ValidationException("Invalid webhook payload", code="INVALID_PAYLOAD")
