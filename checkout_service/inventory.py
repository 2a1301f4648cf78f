"""
Inventory ledger.

``try_decrement`` is the only place stock leaves the ledger. It is one
conditional UPDATE, so any number of concurrent converters can call it
without application locks; the database serialises them on the row and the
``available_quantity >= :qty`` predicate lets exactly the affordable ones
through.
"""

import logging
from sqlalchemy import case, update

from checkout_service.database import utcnow
from checkout_service.models import InventoryRecord, InventoryStatus

logger = logging.getLogger(__name__)


def get_record(db, item_id):
    return db.get(InventoryRecord, item_id)


def try_decrement(db, item_id, quantity) -> bool:
    remaining = InventoryRecord.available_quantity - quantity
    stmt = (
        update(InventoryRecord)
        .where(
            InventoryRecord.item_id == item_id,
            InventoryRecord.status == InventoryStatus.ACTIVE.value,
            InventoryRecord.available_quantity >= quantity,
        )
        .values(
            available_quantity=remaining,
            status=case(
                (remaining == 0, InventoryStatus.SOLD.value),
                else_=InventoryRecord.status,
            ),
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    decremented = db.execute(stmt).rowcount == 1
    if not decremented:
        logger.warning(f"Insufficient stock for item {item_id} (requested {quantity})")
    return decremented


def set_stock(db, item_id, available_quantity, status=InventoryStatus.ACTIVE.value):
    record = get_record(db, item_id)
    if record is None:
        record = InventoryRecord(item_id=item_id)
        db.add(record)
    record.available_quantity = available_quantity
    record.status = status
    record.updated_at = utcnow()
    return record


def lock_out(db, item_id) -> bool:
    """Seller pauses sales; pending conversions for this item will fail."""
    stmt = (
        update(InventoryRecord)
        .where(
            InventoryRecord.item_id == item_id,
            InventoryRecord.status == InventoryStatus.ACTIVE.value,
        )
        .values(status=InventoryStatus.LOCKED_OUT.value, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return db.execute(stmt).rowcount == 1
