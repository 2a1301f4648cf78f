"""
Reservation coordinator.

Orchestrates one buyer's checkout of one scarce item:

    create_intent ─▶ initiate_payment ─▶ (buyer pays gateway) ─▶ confirm_payment

Workers share no in-process state. Every write is a conditional update on
the intent row or the inventory row, so duplicate requests, the expiry
sweeper and late webhooks can interleave freely; whichever write lands first
decides, and the others get a typed result back.

The acting buyer is always passed in explicitly.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from sqlalchemy.exc import IntegrityError

from checkout_service import compensation, inventory, orders, state_machine
from checkout_service.catalog import get_item
from checkout_service.database import utcnow
from checkout_service.events import (
    CHECKOUT_CONVERTED,
    CHECKOUT_SOLD_OUT,
    COMPENSATION_REQUIRED,
    publish_safely,
)
from checkout_service.models import CheckoutIntent, IntentStatus, InventoryStatus, Order
from checkout_service.payment_gateway import GatewayError
from checkout_service.results import Err, ErrorKind, Ok, SOLD_OUT_MESSAGE

logger = logging.getLogger(__name__)

BUYER = "buyer"
OPERATOR = "operator"
GATEWAY = "gateway"


@dataclass(frozen=True)
class Actor:
    id: str
    role: str = BUYER

    @property
    def is_operator(self) -> bool:
        return self.role == OPERATOR


@dataclass(frozen=True)
class PaymentInitiation:
    client_secret: str
    lock_expires_at: datetime
    external_payment_ref: str


@dataclass(frozen=True)
class IntentView:
    intent: CheckoutIntent
    order: Optional[Order] = None


class ReservationCoordinator:
    def __init__(self, session_factory, gateway, publisher=None, clock=utcnow):
        self.session_factory = session_factory
        self.gateway = gateway
        self.publisher = publisher
        self.clock = clock

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create_intent(self, buyer_id, item_id, show_id, quantity=1):
        """Open a checkout attempt. The stock check is advisory; nothing is held.

        A buyer retrying (double click, reload) gets their open intent back.
        An overdue open intent is left for the sweeper: a settled payment may
        still convert it inside the sweep grace period.
        """
        if quantity < 1:
            return Err(ErrorKind.INVALID_INPUT, "quantity must be at least 1")

        now = self.clock()
        with self.session_factory() as db:
            item = get_item(db, item_id)
            if item is None:
                return Err(ErrorKind.NOT_FOUND, f"Item {item_id} not found")

            existing = self._open_intent(db, buyer_id, item_id)
            if existing is not None:
                if state_machine.is_overdue(existing, now):
                    return Err(ErrorKind.INTENT_EXPIRED, f"Intent {existing.id} is past its deadline")
                return Ok(existing, replayed=True)

            if item.status != InventoryStatus.ACTIVE.value or item.available_quantity < quantity:
                logger.info(f"Item {item_id} unavailable for buyer {buyer_id} (available {item.available_quantity})")
                return Err(ErrorKind.ITEM_UNAVAILABLE, f"Item {item_id} is unavailable")

            intent = CheckoutIntent(
                buyer_id=buyer_id,
                seller_id=item.seller_id,
                item_id=item_id,
                show_id=show_id,
                quantity=quantity,
                status=IntentStatus.INTENT.value,
                intent_expires_at=state_machine.intent_deadline(now),
                created_at=now,
                updated_at=now,
            )
            db.add(intent)
            try:
                db.commit()
            except IntegrityError:
                # A concurrent request from the same buyer opened one first
                db.rollback()
                existing = self._open_intent(db, buyer_id, item_id)
                if existing is None:
                    raise
                return Ok(existing, replayed=True)

            logger.info(f"Checkout intent {intent.id} created for buyer {buyer_id}, item {item_id}")
            return Ok(intent)

    # ------------------------------------------------------------------
    # Initiate payment
    # ------------------------------------------------------------------

    def initiate_payment(self, intent_id, buyer_id):
        now = self.clock()
        with self.session_factory() as db:
            intent = db.get(CheckoutIntent, intent_id)
            if intent is None:
                return Err(ErrorKind.NOT_FOUND, f"Intent {intent_id} not found")
            if intent.buyer_id != buyer_id:
                return Err(ErrorKind.FORBIDDEN, "Intent belongs to another buyer")

            if intent.status == IntentStatus.LOCKED.value and now < intent.lock_expires_at:
                return self._replay_initiation(intent)

            error = self._lock_precondition(intent, now)
            if error is not None:
                return error

            item = get_item(db, intent.item_id)
            if item is None:
                return Err(ErrorKind.NOT_FOUND, f"Item {intent.item_id} not found")

            amount = item.charge_amount(intent.quantity)
            currency = item.currency
            destination = item.seller_payout_account
            metadata = {
                "checkout_intent_id": intent.id,
                "buyer_id": intent.buyer_id,
                "seller_id": intent.seller_id,
                "item_id": intent.item_id,
                "show_id": intent.show_id,
            }

        # No session is held open across the gateway call
        try:
            payment = self.gateway.create_payment_object(
                amount,
                currency,
                destination,
                metadata,
                idempotency_key=f"checkout-intent-{intent_id}",
            )
        except GatewayError as e:
            return Err(ErrorKind.GATEWAY_ERROR, str(e))

        now = self.clock()
        with self.session_factory() as db:
            if state_machine.lock(db, intent_id, now, payment.external_ref, amount, currency, destination):
                db.commit()
                intent = db.get(CheckoutIntent, intent_id)
                return Ok(PaymentInitiation(
                    client_secret=payment.client_secret,
                    lock_expires_at=intent.lock_expires_at,
                    external_payment_ref=payment.external_ref,
                ))

            db.rollback()
            intent = db.get(CheckoutIntent, intent_id)

        # A duplicate request with the same idempotency key locked it first
        if intent.status == IntentStatus.LOCKED.value and intent.external_payment_ref == payment.external_ref:
            return Ok(PaymentInitiation(
                client_secret=payment.client_secret,
                lock_expires_at=intent.lock_expires_at,
                external_payment_ref=payment.external_ref,
            ), replayed=True)

        self._void_quietly(payment.external_ref)
        return self._lock_precondition(intent, now) or Err(
            ErrorKind.INVALID_STATE, f"Intent is {intent.status}"
        )

    # ------------------------------------------------------------------
    # Confirm payment (webhook and client poll)
    # ------------------------------------------------------------------

    def confirm_payment(self, intent_id, external_payment_ref, gateway_confirmed=False):
        """Convert a paid intent into an order, exactly once.

        ``gateway_confirmed`` is set by the webhook path, whose event was
        signature-verified. Otherwise the gateway is asked whether the
        payment settled before anything is written. Either way the
        conversion is driven by the gateway, so it is accepted even when the
        lock timer already ran out, as long as the intent is still locked.
        """
        if not gateway_confirmed:
            try:
                status = self.gateway.get_payment_status(external_payment_ref)
            except GatewayError as e:
                return Err(ErrorKind.GATEWAY_ERROR, str(e))
            if not status.settled:
                return Err(ErrorKind.PAYMENT_PENDING, f"Payment {external_payment_ref} is {status.status}")

        now = self.clock()
        with self.session_factory() as db:
            intent = db.get(CheckoutIntent, intent_id)
            outcome = self._settled_outcome(db, intent_id, intent, external_payment_ref, now)
            if outcome is not None:
                return outcome

            if not state_machine.convert(db, intent.id, now, gateway_confirmed=True):
                db.rollback()
                return self._after_lost_conversion(intent_id, external_payment_ref, now)

            if not inventory.try_decrement(db, intent.item_id, intent.quantity):
                db.rollback()
                return self._sold_out(intent_id, external_payment_ref, now)

            order = orders.create_from_intent(db, intent, now)
            db.commit()

        logger.info(f"Intent {intent_id} converted to order {order.id}")
        publish_safely(self.publisher, CHECKOUT_CONVERTED, {
            "intent_id": intent_id,
            "order_id": order.id,
            "buyer_id": order.buyer_id,
            "seller_id": order.seller_id,
            "item_id": order.item_id,
            "show_id": order.show_id,
            "quantity": order.quantity,
        })
        return Ok(order)

    # ------------------------------------------------------------------
    # Cancel / read
    # ------------------------------------------------------------------

    def cancel_intent(self, intent_id, actor):
        now = self.clock()
        with self.session_factory() as db:
            intent = db.get(CheckoutIntent, intent_id)
            if intent is None:
                return Err(ErrorKind.NOT_FOUND, f"Intent {intent_id} not found")
            if not actor.is_operator and intent.buyer_id != actor.id:
                return Err(ErrorKind.FORBIDDEN, "Intent belongs to another buyer")
            if state_machine.is_terminal(intent.status):
                return Err(ErrorKind.INVALID_STATE, f"Intent is {intent.status}")

            if not state_machine.cancel(db, intent_id, now, reason=actor.role):
                db.rollback()
                return Err(ErrorKind.INVALID_STATE, "Intent changed state concurrently")
            db.commit()
            db.refresh(intent)

        if intent.external_payment_ref:
            self._release_payment(intent, now)
        logger.info(f"Intent {intent_id} cancelled by {actor.role} {actor.id}")
        return Ok(intent)

    def cancel_for_gateway(self, intent_id, external_payment_ref):
        """The gateway cancelled the payment object of a locked intent."""
        now = self.clock()
        with self.session_factory() as db:
            intent = db.get(CheckoutIntent, intent_id)
            if intent is None:
                return Err(ErrorKind.NOT_FOUND, f"Intent {intent_id} not found")
            if intent.status != IntentStatus.LOCKED.value or intent.external_payment_ref != external_payment_ref:
                return Err(ErrorKind.INVALID_STATE, f"Intent is {intent.status}")

            if not state_machine.cancel(db, intent_id, now, reason=GATEWAY,
                                        external_payment_ref=external_payment_ref):
                db.rollback()
                return Err(ErrorKind.INVALID_STATE, "Intent changed state concurrently")
            db.commit()
            db.refresh(intent)

        logger.info(f"Intent {intent_id} cancelled: payment {external_payment_ref} cancelled by gateway")
        return Ok(intent)

    def get_intent(self, intent_id, buyer_id):
        with self.session_factory() as db:
            intent = db.get(CheckoutIntent, intent_id)
            if intent is None:
                return Err(ErrorKind.NOT_FOUND, f"Intent {intent_id} not found")
            if intent.buyer_id != buyer_id:
                return Err(ErrorKind.FORBIDDEN, "Intent belongs to another buyer")
            order = None
            if intent.status == IntentStatus.CONVERTED.value:
                order = orders.get_by_intent(db, intent.id)
            return Ok(IntentView(intent=intent, order=order))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _open_intent(self, db, buyer_id, item_id):
        return (
            db.query(CheckoutIntent)
            .filter(
                CheckoutIntent.buyer_id == buyer_id,
                CheckoutIntent.item_id == item_id,
                CheckoutIntent.status.in_([IntentStatus.INTENT.value, IntentStatus.LOCKED.value]),
            )
            .first()
        )

    def _lock_precondition(self, intent, now):
        if intent.status == IntentStatus.EXPIRED.value:
            return Err(ErrorKind.INTENT_EXPIRED, "Intent expired")
        if not state_machine.is_allowed("lock", intent.status):
            return Err(ErrorKind.INVALID_STATE, f"Intent is {intent.status}")
        if not state_machine.can_lock(intent, now):
            return Err(ErrorKind.INTENT_EXPIRED, "Intent expired")
        return None

    def _replay_initiation(self, intent):
        try:
            client_secret = self.gateway.retrieve_client_secret(intent.external_payment_ref)
        except GatewayError as e:
            return Err(ErrorKind.GATEWAY_ERROR, str(e))
        return Ok(PaymentInitiation(
            client_secret=client_secret,
            lock_expires_at=intent.lock_expires_at,
            external_payment_ref=intent.external_payment_ref,
        ), replayed=True)

    def _settled_outcome(self, db, intent_id, intent, external_payment_ref, now):
        """Decide a settled payment that cannot (or need not) convert.

        Returns None when the intent is locked with this payment and the
        conversion should go ahead.
        """
        if intent is None:
            logger.error(f"Settled payment {external_payment_ref} references unknown intent {intent_id}")
            self._flag(db, intent_id, external_payment_ref, compensation.UNKNOWN_INTENT, now)
            return Err(ErrorKind.NOT_FOUND, f"Intent {intent_id} not found")

        if intent.status == IntentStatus.CONVERTED.value:
            if intent.external_payment_ref == external_payment_ref:
                return Ok(orders.get_by_intent(db, intent.id), replayed=True)
            self._flag(db, intent.id, external_payment_ref, compensation.DUPLICATE_PAYMENT, now,
                       reverse_transfer=bool(intent.destination_account))
            return Err(ErrorKind.INVALID_STATE, "Intent already converted by another payment")

        if intent.external_payment_ref != external_payment_ref:
            self._flag(db, intent.id, external_payment_ref, compensation.PAYMENT_MISMATCH, now,
                       reverse_transfer=bool(intent.destination_account))
            return Err(ErrorKind.INVALID_STATE, "Payment does not match this intent")

        if intent.status != IntentStatus.LOCKED.value:
            reason = (
                compensation.INTENT_EXPIRED
                if intent.status == IntentStatus.EXPIRED.value
                else compensation.INTENT_CANCELLED
            )
            self._flag(db, intent.id, external_payment_ref, reason, now,
                       amount=intent.amount_total, currency=intent.currency,
                       reverse_transfer=bool(intent.destination_account))
            return Err(ErrorKind.INVALID_STATE, f"Intent is {intent.status}")

        if not state_machine.can_convert(intent, now, gateway_confirmed=True):
            return Err(ErrorKind.INVALID_STATE, f"Intent is {intent.status}")
        return None

    def _after_lost_conversion(self, intent_id, external_payment_ref, now):
        with self.session_factory() as db:
            intent = db.get(CheckoutIntent, intent_id)
            outcome = self._settled_outcome(db, intent_id, intent, external_payment_ref, now)
        return outcome or Err(ErrorKind.INVALID_STATE, "Intent changed state concurrently")

    def _sold_out(self, intent_id, external_payment_ref, now):
        with self.session_factory() as db:
            state_machine.cancel(db, intent_id, now, reason=compensation.SOLD_OUT)
            db.commit()
            intent = db.get(CheckoutIntent, intent_id)
            self._flag(db, intent_id, external_payment_ref, compensation.SOLD_OUT, now,
                       amount=intent.amount_total, currency=intent.currency,
                       reverse_transfer=bool(intent.destination_account))
            item_id, buyer_id = intent.item_id, intent.buyer_id

        logger.warning(f"Intent {intent_id} lost the last unit of item {item_id} after payment")
        publish_safely(self.publisher, CHECKOUT_SOLD_OUT, {
            "intent_id": intent_id,
            "item_id": item_id,
            "buyer_id": buyer_id,
        })
        return Err(ErrorKind.SOLD_OUT, SOLD_OUT_MESSAGE)

    def _flag(self, db, intent_id, external_payment_ref, reason, now, **kwargs):
        record = compensation.flag_for_compensation(db, intent_id, external_payment_ref, reason, now, **kwargs)
        publish_safely(self.publisher, COMPENSATION_REQUIRED, {
            "compensation_id": record.id,
            "intent_id": intent_id,
            "external_payment_ref": external_payment_ref,
            "reason": record.reason,
        })
        return record

    def _release_payment(self, intent, now):
        """Void the cancelled intent's payment, or flag it if the buyer already paid."""
        ref = intent.external_payment_ref
        try:
            status = self.gateway.get_payment_status(ref)
            if status.settled:
                with self.session_factory() as db:
                    self._flag(db, intent.id, ref, compensation.INTENT_CANCELLED, now,
                               amount=intent.amount_total, currency=intent.currency,
                               reverse_transfer=bool(intent.destination_account))
                return
            self.gateway.void_payment_object(ref)
        except GatewayError as e:
            logger.warning(f"Could not release payment {ref} for cancelled intent {intent.id}: {e}")

    def _void_quietly(self, external_ref):
        try:
            self.gateway.void_payment_object(external_ref)
        except GatewayError as e:
            logger.warning(f"Could not void orphaned payment {external_ref}: {e}")
