"""
Compensation ledger.

A payment the gateway reports as settled but which could not become an order
(lost the last unit, intent already expired or cancelled, unknown payment
reference) is written here and refunded out of band. Flags are keyed by the
payment reference, so webhook retries never create a second refund.
"""

import logging
from sqlalchemy.exc import IntegrityError

from checkout_service.database import utcnow
from checkout_service.models import CompensationRecord, CompensationStatus
from checkout_service.payment_gateway import GatewayError

logger = logging.getLogger(__name__)

SOLD_OUT = "sold_out"
INTENT_EXPIRED = "intent_expired"
INTENT_CANCELLED = "intent_cancelled"
PAYMENT_MISMATCH = "payment_mismatch"
DUPLICATE_PAYMENT = "duplicate_payment"
UNKNOWN_INTENT = "unknown_intent"


def get_by_payment_ref(db, external_payment_ref):
    return db.query(CompensationRecord).filter_by(external_payment_ref=external_payment_ref).first()


def flag_for_compensation(db, intent_id, external_payment_ref, reason, now,
                          amount=None, currency=None, reverse_transfer=False):
    """Record a settled payment that must be reversed. Commits; idempotent per payment ref."""
    existing = get_by_payment_ref(db, external_payment_ref)
    if existing:
        return existing

    record = CompensationRecord(
        intent_id=intent_id,
        external_payment_ref=external_payment_ref,
        amount=amount,
        currency=currency,
        reason=reason,
        reverse_transfer=reverse_transfer,
        created_at=now,
    )
    db.add(record)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return get_by_payment_ref(db, external_payment_ref)

    logger.warning(
        f"Payment {external_payment_ref} for intent {intent_id} flagged for compensation ({reason})"
    )
    return record


def list_open(db, limit=100):
    return (
        db.query(CompensationRecord)
        .filter(CompensationRecord.status.in_([
            CompensationStatus.PENDING.value,
            CompensationStatus.FAILED.value,
        ]))
        .order_by(CompensationRecord.created_at)
        .limit(limit)
        .all()
    )


class CompensationProcessor:
    """Refunds open compensation records; failed refunds are retried on the next run."""

    def __init__(self, session_factory, gateway, clock=utcnow):
        self.session_factory = session_factory
        self.gateway = gateway
        self.clock = clock

    def run_once(self, limit=100):
        refunded = failed = 0
        with self.session_factory() as db:
            for record in list_open(db, limit):
                try:
                    refund_ref = self.gateway.refund_payment(
                        record.external_payment_ref,
                        reverse_transfer=record.reverse_transfer,
                        idempotency_key=f"compensation-{record.id}",
                    )
                except GatewayError as e:
                    record.status = CompensationStatus.FAILED.value
                    record.last_error = str(e)
                    failed += 1
                else:
                    record.status = CompensationStatus.REFUNDED.value
                    record.refund_ref = refund_ref
                    record.last_error = None
                    record.resolved_at = self.clock()
                    refunded += 1
                    logger.info(f"Refunded {record.external_payment_ref} ({record.reason}): {refund_ref}")
                db.commit()
        return {"refunded": refunded, "failed": failed}
