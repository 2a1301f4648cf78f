import secrets
import time

from checkout_service.models import Order


def generate_pickup_code():
    return f"PU{str(int(time.time() * 1000))[-8:]}"


def generate_completion_code():
    # 9 digits, never a leading zero
    return str(100000000 + secrets.randbelow(900000000))


def get_by_intent(db, intent_id):
    return db.query(Order).filter_by(source_intent_id=intent_id).first()


def create_from_intent(db, intent, now):
    """Only called inside the conversion transaction, after the status CAS."""
    order = Order(
        source_intent_id=intent.id,
        buyer_id=intent.buyer_id,
        seller_id=intent.seller_id,
        item_id=intent.item_id,
        show_id=intent.show_id,
        quantity=intent.quantity,
        price_total=intent.amount_total,
        currency=intent.currency,
        external_payment_ref=intent.external_payment_ref,
        pickup_code=generate_pickup_code(),
        completion_code=generate_completion_code(),
        created_at=now,
    )
    db.add(order)
    return order
