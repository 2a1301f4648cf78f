from dataclasses import dataclass
from typing import Optional

from checkout_service.config import settings
from checkout_service.models import InventoryRecord, InventoryStatus, Item


@dataclass(frozen=True)
class ItemSnapshot:
    item_id: str
    seller_id: str
    price: int
    delivery_fee: int
    currency: str
    seller_payout_account: Optional[str]
    status: str
    available_quantity: int

    def charge_amount(self, quantity: int) -> int:
        return self.price * quantity + self.delivery_fee


def get_item(db, item_id) -> Optional[ItemSnapshot]:
    item = db.get(Item, item_id)
    if item is None:
        return None
    record = db.get(InventoryRecord, item_id)
    return ItemSnapshot(
        item_id=item.id,
        seller_id=item.seller_id,
        price=item.price,
        delivery_fee=item.delivery_fee or 0,
        currency=item.currency or settings.currency,
        seller_payout_account=item.seller_payout_account,
        status=record.status if record else InventoryStatus.LOCKED_OUT.value,
        available_quantity=record.available_quantity if record else 0,
    )
