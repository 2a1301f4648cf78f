"""
Expiry sweeper.

Moves intents whose deadline has passed to ``expired``. It is the only
writer that changes an intent because of time alone, and it does so with
the same conditional writes as everyone else, so racing a webhook is safe:
whichever UPDATE lands first wins.

Run as a process::

    python -m checkout_service.sweeper              # loop every SWEEP_INTERVAL_SECONDS
    python -m checkout_service.sweeper --once       # single pass (cron)
    python -m checkout_service.sweeper --refunds    # also refund flagged payments
"""

import argparse
import logging
import threading
from datetime import timedelta
from sqlalchemy import and_, update

from checkout_service.config import settings
from checkout_service.database import utcnow
from checkout_service.models import CheckoutIntent, IntentStatus

logger = logging.getLogger(__name__)


class ExpirySweeper:
    def __init__(self, session_factory, clock=utcnow, lock_grace_seconds=None, compensation_processor=None):
        self.session_factory = session_factory
        self.clock = clock
        grace = settings.lock_sweep_grace_seconds if lock_grace_seconds is None else lock_grace_seconds
        # Extra time for gateway confirmations racing the client-side timer
        self.lock_grace = timedelta(seconds=grace)
        self.compensation_processor = compensation_processor

    def run_once(self, now=None):
        now = now or self.clock()
        with self.session_factory() as db:
            expired_intents = self._expire(
                db,
                now,
                and_(
                    CheckoutIntent.status == IntentStatus.INTENT.value,
                    CheckoutIntent.intent_expires_at <= now,
                ),
            )
            expired_locks = self._expire(
                db,
                now,
                and_(
                    CheckoutIntent.status == IntentStatus.LOCKED.value,
                    CheckoutIntent.lock_expires_at <= now - self.lock_grace,
                ),
            )
            db.commit()

        if expired_intents or expired_locks:
            logger.info(f"Expired {expired_intents} unlocked and {expired_locks} locked intents")

        refunds = None
        if self.compensation_processor is not None:
            refunds = self.compensation_processor.run_once()
        return {"intent": expired_intents, "locked": expired_locks, "refunds": refunds}

    def run_forever(self, interval=None, stop_event=None):
        interval = settings.sweep_interval_seconds if interval is None else interval
        stop_event = stop_event or threading.Event()
        logger.info(f"Expiry sweeper started (interval {interval}s)")
        while not stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Sweep failed, retrying next interval")
            stop_event.wait(interval)
        logger.info("Expiry sweeper stopped")

    def _expire(self, db, now, overdue):
        stmt = (
            update(CheckoutIntent)
            .where(overdue)
            .values(status=IntentStatus.EXPIRED.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return db.execute(stmt).rowcount


def main(argv=None):
    from checkout_service.compensation import CompensationProcessor
    from checkout_service.database import Base, SessionLocal, engine
    from checkout_service.payment_gateway import StripeGateway

    parser = argparse.ArgumentParser(description="Expire stale checkout intents")
    parser.add_argument("--once", action="store_true", help="run a single sweep and exit")
    parser.add_argument("--interval", type=float, default=settings.sweep_interval_seconds)
    parser.add_argument("--refunds", action="store_true", help="also refund payments flagged for compensation")
    args = parser.parse_args(argv)

    logging.basicConfig(level=settings.log_level)
    Base.metadata.create_all(bind=engine)

    processor = CompensationProcessor(SessionLocal, StripeGateway()) if args.refunds else None
    sweeper = ExpirySweeper(SessionLocal, compensation_processor=processor)
    if args.once:
        logger.info(f"Sweep result: {sweeper.run_once()}")
        return
    sweeper.run_forever(interval=args.interval)


if __name__ == "__main__":
    main()
