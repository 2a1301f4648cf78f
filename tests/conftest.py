from datetime import datetime, timedelta, timezone
import pytest
from sqlalchemy.orm import sessionmaker

from checkout_service import inventory
from checkout_service.coordinator import ReservationCoordinator
from checkout_service.database import Base, make_engine
from checkout_service.models import Item
from checkout_service.payment_gateway import GatewayError, PaymentObject, PaymentStatus

# Setup test database
SQLALCHEMY_DATABASE_URL = "sqlite:///./test_checkout.db"
engine = make_engine(SQLALCHEMY_DATABASE_URL)
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

START = datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now=START):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class FakeGateway:
    """In-memory payment gateway. Same idempotency key, same payment object."""

    def __init__(self):
        self.created = []
        self.by_key = {}
        self.statuses = {}
        self.voided = []
        self.refunds = []
        self.fail_create = False
        self.fail_status = False
        self.fail_refund = set()

    def create_payment_object(self, amount, currency, destination_account, metadata, idempotency_key):
        if self.fail_create:
            raise GatewayError("gateway unavailable")
        self.created.append({
            "amount": amount,
            "currency": currency,
            "destination_account": destination_account,
            "metadata": metadata,
            "idempotency_key": idempotency_key,
        })
        if idempotency_key not in self.by_key:
            ref = f"pi_{len(self.by_key) + 1}"
            self.by_key[idempotency_key] = ref
            self.statuses[ref] = "requires_payment_method"
        ref = self.by_key[idempotency_key]
        return PaymentObject(external_ref=ref, client_secret=f"{ref}_secret")

    def retrieve_client_secret(self, external_ref):
        return f"{external_ref}_secret"

    def get_payment_status(self, external_ref):
        if self.fail_status:
            raise GatewayError("gateway unavailable")
        return PaymentStatus(external_ref, self.statuses.get(external_ref, "succeeded"))

    def settle(self, external_ref):
        self.statuses[external_ref] = "succeeded"

    def void_payment_object(self, external_ref):
        self.voided.append(external_ref)
        self.statuses[external_ref] = "canceled"
        return True

    def refund_payment(self, external_ref, reverse_transfer=False, idempotency_key=None):
        if external_ref in self.fail_refund:
            raise GatewayError("refund declined")
        self.refunds.append((external_ref, reverse_transfer, idempotency_key))
        return f"re_{external_ref}"


class RecordingPublisher:
    def __init__(self):
        self.events = []

    def publish(self, event_type, data):
        self.events.append((event_type, data))

    def types(self):
        return [event_type for event_type, _ in self.events]


def seed_item(item_id="item_1", quantity=1, price=2500, delivery_fee=500,
              seller_id="seller_1", payout_account=None, status="active"):
    db = TestingSessionLocal()
    db.add(Item(
        id=item_id,
        seller_id=seller_id,
        title="Vintage jacket",
        price=price,
        delivery_fee=delivery_fee,
        currency="usd",
        seller_payout_account=payout_account,
    ))
    inventory.set_stock(db, item_id, quantity, status=status)
    db.commit()
    db.close()


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def coordinator(gateway, publisher, clock):
    return ReservationCoordinator(TestingSessionLocal, gateway, publisher, clock=clock)
