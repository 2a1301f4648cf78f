import enum
import uuid
from sqlalchemy import Boolean, CheckConstraint, Column, Index, Integer, String
from checkout_service.database import Base, UTCDateTime, utcnow


class IntentStatus(str, enum.Enum):
    INTENT = "intent"
    LOCKED = "locked"
    CONVERTED = "converted"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class InventoryStatus(str, enum.Enum):
    ACTIVE = "active"
    LOCKED_OUT = "locked_out"
    SOLD = "sold"


class CompensationStatus(str, enum.Enum):
    PENDING = "pending"
    REFUNDED = "refunded"
    FAILED = "failed"


OPEN_STATUSES = (IntentStatus.INTENT.value, IntentStatus.LOCKED.value)


def new_id():
    return str(uuid.uuid4())


class CheckoutIntent(Base):
    __tablename__ = "checkout_intents"

    id = Column(String, primary_key=True, default=new_id)
    buyer_id = Column(String, nullable=False, index=True)
    seller_id = Column(String, nullable=False)
    item_id = Column(String, nullable=False, index=True)
    show_id = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    status = Column(String, nullable=False, default=IntentStatus.INTENT.value)  # intent | locked | converted | expired | cancelled
    intent_expires_at = Column(UTCDateTime, nullable=False)
    lock_expires_at = Column(UTCDateTime, nullable=True)
    external_payment_ref = Column(String, nullable=True, index=True)  # Stripe PaymentIntent ID
    amount_total = Column(Integer, nullable=True)  # minor units, set on lock
    currency = Column(String, nullable=True)
    destination_account = Column(String, nullable=True)  # seller payout account charged through
    cancel_reason = Column(String, nullable=True)  # buyer | operator | sold_out
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_checkout_intents_quantity_positive"),
        # One open attempt per buyer and item
        Index(
            "uq_checkout_intents_open_buyer_item",
            "buyer_id",
            "item_id",
            unique=True,
            postgresql_where=status.in_(OPEN_STATUSES),
            sqlite_where=status.in_(OPEN_STATUSES),
        ),
        Index("ix_checkout_intents_status_deadlines", "status", "intent_expires_at", "lock_expires_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "buyer_id": self.buyer_id,
            "seller_id": self.seller_id,
            "item_id": self.item_id,
            "show_id": self.show_id,
            "quantity": self.quantity,
            "status": self.status,
            "intent_expires_at": self.intent_expires_at.isoformat(),
            "lock_expires_at": self.lock_expires_at.isoformat() if self.lock_expires_at else None,
            "external_payment_ref": self.external_payment_ref,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, default=new_id)
    source_intent_id = Column(String, nullable=False, unique=True, index=True)
    buyer_id = Column(String, nullable=False, index=True)
    seller_id = Column(String, nullable=False)
    item_id = Column(String, nullable=False)
    show_id = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    price_total = Column(Integer, nullable=False)  # minor units
    currency = Column(String, nullable=False)
    external_payment_ref = Column(String, nullable=False)
    pickup_code = Column(String, nullable=False)
    completion_code = Column(String, nullable=False)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "source_intent_id": self.source_intent_id,
            "buyer_id": self.buyer_id,
            "seller_id": self.seller_id,
            "item_id": self.item_id,
            "show_id": self.show_id,
            "quantity": self.quantity,
            "price_total": self.price_total,
            "currency": self.currency,
            "pickup_code": self.pickup_code,
            "completion_code": self.completion_code,
            "created_at": self.created_at.isoformat(),
        }


class InventoryRecord(Base):
    __tablename__ = "inventory"

    item_id = Column(String, primary_key=True)
    available_quantity = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default=InventoryStatus.ACTIVE.value)  # active | locked_out | sold
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("available_quantity >= 0", name="ck_inventory_available_nonnegative"),
    )


class Item(Base):
    __tablename__ = "items"

    id = Column(String, primary_key=True, default=new_id)
    seller_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False, default="")
    price = Column(Integer, nullable=False)  # minor units
    delivery_fee = Column(Integer, nullable=False, default=0)
    currency = Column(String, nullable=True)
    seller_payout_account = Column(String, nullable=True)  # Stripe Connect account


class CompensationRecord(Base):
    __tablename__ = "compensations"

    id = Column(String, primary_key=True, default=new_id)
    intent_id = Column(String, nullable=False, index=True)
    external_payment_ref = Column(String, nullable=False, unique=True)
    amount = Column(Integer, nullable=True)
    currency = Column(String, nullable=True)
    reason = Column(String, nullable=False)
    status = Column(String, nullable=False, default=CompensationStatus.PENDING.value)  # pending | refunded | failed
    reverse_transfer = Column(Boolean, nullable=False, default=False)  # destination charge
    refund_ref = Column(String, nullable=True)
    last_error = Column(String, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    resolved_at = Column(UTCDateTime, nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "intent_id": self.intent_id,
            "external_payment_ref": self.external_payment_ref,
            "amount": self.amount,
            "currency": self.currency,
            "reason": self.reason,
            "status": self.status,
            "refund_ref": self.refund_ref,
            "created_at": self.created_at.isoformat(),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }
