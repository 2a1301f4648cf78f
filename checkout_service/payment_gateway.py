import logging
from dataclasses import dataclass
import stripe

from checkout_service.config import settings

logger = logging.getLogger(__name__)

stripe.api_key = settings.stripe_secret_key

SETTLED_STATUSES = {"succeeded"}
VOIDABLE_STATUSES = {
    "requires_payment_method",
    "requires_confirmation",
    "requires_action",
    "requires_capture",
    "processing",
}


class GatewayError(Exception):
    pass


class WebhookError(Exception):
    pass


class InvalidPayload(WebhookError):
    pass


class InvalidSignature(WebhookError):
    pass


@dataclass(frozen=True)
class PaymentObject:
    external_ref: str
    client_secret: str


@dataclass(frozen=True)
class PaymentStatus:
    external_ref: str
    status: str

    @property
    def settled(self) -> bool:
        return self.status in SETTLED_STATUSES


class StripeGateway:
    """Stripe PaymentIntents, charged to the seller's Connect account when one is set."""

    def __init__(self, webhook_secret=None, platform_fee_percent=None):
        self.webhook_secret = webhook_secret or settings.stripe_webhook_secret
        self.platform_fee_percent = (
            settings.platform_fee_percent if platform_fee_percent is None else platform_fee_percent
        )

    def create_payment_object(self, amount: int, currency: str, destination_account, metadata: dict, idempotency_key: str) -> PaymentObject:
        params = {
            "amount": amount,
            "currency": currency,
            "automatic_payment_methods": {"enabled": True},
            "metadata": {k: str(v) for k, v in metadata.items()},
            "idempotency_key": idempotency_key,
        }
        if destination_account:
            params["transfer_data"] = {"destination": destination_account}
            params["application_fee_amount"] = round(amount * self.platform_fee_percent / 100)

        try:
            intent = stripe.PaymentIntent.create(**params)
        except stripe.StripeError as e:
            logger.error(f"Failed to create Stripe payment intent ({idempotency_key}): {e}")
            raise GatewayError(str(e)) from e
        return PaymentObject(external_ref=intent.id, client_secret=intent.client_secret)

    def retrieve_client_secret(self, external_ref: str) -> str:
        try:
            intent = stripe.PaymentIntent.retrieve(external_ref)
        except stripe.StripeError as e:
            logger.error(f"Failed to retrieve Stripe payment intent {external_ref}: {e}")
            raise GatewayError(str(e)) from e
        return intent.client_secret

    def get_payment_status(self, external_ref: str) -> PaymentStatus:
        try:
            intent = stripe.PaymentIntent.retrieve(external_ref)
        except stripe.StripeError as e:
            logger.error(f"Failed to fetch status of {external_ref}: {e}")
            raise GatewayError(str(e)) from e
        return PaymentStatus(external_ref=external_ref, status=intent.status)

    def void_payment_object(self, external_ref: str):
        try:
            intent = stripe.PaymentIntent.retrieve(external_ref)
            if intent.status not in VOIDABLE_STATUSES:
                logger.info(f"Payment intent {external_ref} is {intent.status}, not voiding")
                return False
            stripe.PaymentIntent.cancel(external_ref)
        except stripe.StripeError as e:
            logger.error(f"Failed to void Stripe payment intent {external_ref}: {e}")
            raise GatewayError(str(e)) from e
        logger.info(f"Voided Stripe payment intent {external_ref}")
        return True

    def refund_payment(self, external_ref: str, reverse_transfer=False, idempotency_key=None) -> str:
        params = {"payment_intent": external_ref}
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        if reverse_transfer:
            params["reverse_transfer"] = True
            params["refund_application_fee"] = True
        try:
            refund = stripe.Refund.create(**params)
        except stripe.StripeError as e:
            logger.error(f"Failed to refund {external_ref}: {e}")
            raise GatewayError(str(e)) from e
        return refund.id

    def verify_webhook_signature(self, raw_payload, signature):
        if not signature:
            raise InvalidSignature("Missing stripe-signature header")
        try:
            return stripe.Webhook.construct_event(raw_payload, signature, self.webhook_secret)
        except ValueError as e:
            raise InvalidPayload(str(e)) from e
        except stripe.SignatureVerificationError as e:
            raise InvalidSignature(str(e)) from e
