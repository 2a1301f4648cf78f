"""
Checkout intent state machine.

    intent ──lock──▶ locked ──convert──▶ converted
      │                │
      ├──expire────────┼──▶ expired
      └──cancel────────┴──▶ cancelled

Every transition is a single conditional UPDATE that names the expected
current status. ``rowcount == 0`` means another writer (sweeper, webhook,
duplicate request) got there first; nothing else coordinates writers.
"""

import logging
from datetime import timedelta
from sqlalchemy import and_, or_, update

from checkout_service.config import settings
from checkout_service.models import CheckoutIntent, IntentStatus

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset({
    IntentStatus.CONVERTED.value,
    IntentStatus.EXPIRED.value,
    IntentStatus.CANCELLED.value,
})

# action -> (expected current statuses, target status)
TRANSITIONS = {
    "lock": ((IntentStatus.INTENT,), IntentStatus.LOCKED),
    "convert": ((IntentStatus.LOCKED,), IntentStatus.CONVERTED),
    "expire": ((IntentStatus.INTENT, IntentStatus.LOCKED), IntentStatus.EXPIRED),
    "cancel": ((IntentStatus.INTENT, IntentStatus.LOCKED), IntentStatus.CANCELLED),
}


def intent_deadline(now):
    return now + timedelta(seconds=settings.intent_ttl_seconds)


def lock_deadline(now):
    return now + timedelta(seconds=settings.lock_ttl_seconds)


def is_terminal(status) -> bool:
    return status in TERMINAL_STATUSES


def is_allowed(action: str, status) -> bool:
    sources, _ = TRANSITIONS[action]
    return status in {s.value for s in sources}


def can_lock(intent, now) -> bool:
    return intent.status == IntentStatus.INTENT.value and now < intent.intent_expires_at


def can_convert(intent, now, gateway_confirmed=False) -> bool:
    """A settled payment reported by the gateway beats the lock timer."""
    if intent.status != IntentStatus.LOCKED.value:
        return False
    if gateway_confirmed:
        return True
    return intent.lock_expires_at is not None and now < intent.lock_expires_at


def is_overdue(intent, now) -> bool:
    if intent.status == IntentStatus.INTENT.value:
        return now >= intent.intent_expires_at
    if intent.status == IntentStatus.LOCKED.value:
        return intent.lock_expires_at is not None and now >= intent.lock_expires_at
    return False


def overdue_clause(now):
    return or_(
        and_(
            CheckoutIntent.status == IntentStatus.INTENT.value,
            CheckoutIntent.intent_expires_at <= now,
        ),
        and_(
            CheckoutIntent.status == IntentStatus.LOCKED.value,
            CheckoutIntent.lock_expires_at <= now,
        ),
    )


def transition(db, intent_id, action, now, guard=None, **values) -> bool:
    """Compare-and-swap the status of one intent. Returns True if this call won."""
    sources, target = TRANSITIONS[action]
    stmt = (
        update(CheckoutIntent)
        .where(
            CheckoutIntent.id == intent_id,
            CheckoutIntent.status.in_([s.value for s in sources]),
        )
        .values(status=target.value, updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    if guard is not None:
        stmt = stmt.where(guard)

    won = db.execute(stmt).rowcount == 1
    if won:
        logger.info(f"Intent {intent_id}: {action} -> {target.value}")
    else:
        logger.info(f"Intent {intent_id}: {action} lost (status changed or deadline passed)")
    return won


def lock(db, intent_id, now, external_payment_ref, amount_total, currency, destination_account=None):
    return transition(
        db,
        intent_id,
        "lock",
        now,
        guard=CheckoutIntent.intent_expires_at > now,
        lock_expires_at=lock_deadline(now),
        external_payment_ref=external_payment_ref,
        amount_total=amount_total,
        currency=currency,
        destination_account=destination_account,
    )


def convert(db, intent_id, now, gateway_confirmed=False):
    """Move a locked intent to converted.

    Without ``gateway_confirmed`` the swap only wins while the lock timer is
    running. The coordinator always converts on a settled payment and passes
    ``gateway_confirmed=True``.
    """
    guard = None if gateway_confirmed else CheckoutIntent.lock_expires_at > now
    return transition(db, intent_id, "convert", now, guard=guard)


def expire(db, intent_id, now):
    return transition(db, intent_id, "expire", now, guard=overdue_clause(now))


def cancel(db, intent_id, now, reason, external_payment_ref=None):
    guard = None
    if external_payment_ref is not None:
        guard = CheckoutIntent.external_payment_ref == external_payment_ref
    return transition(db, intent_id, "cancel", now, guard=guard, cancel_reason=reason)
