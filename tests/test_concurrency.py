from concurrent.futures import ThreadPoolExecutor

from checkout_service.models import CompensationRecord, InventoryRecord, Order
from checkout_service.results import ErrorKind, Ok
from conftest import TestingSessionLocal, seed_item

BUYERS = [f"buyer_{n}" for n in range(6)]


def test_concurrent_confirmations_sell_last_unit_once(coordinator):
    seed_item(quantity=1)
    locked = []
    for buyer_id in BUYERS:
        intent = coordinator.create_intent(buyer_id, "item_1", "show_1").value
        payment = coordinator.initiate_payment(intent.id, buyer_id).value
        locked.append((intent.id, payment.external_payment_ref))

    with ThreadPoolExecutor(max_workers=len(locked)) as pool:
        results = list(pool.map(
            lambda pair: coordinator.confirm_payment(*pair, gateway_confirmed=True),
            locked,
        ))

    winners = [r for r in results if isinstance(r, Ok)]
    losers = [r for r in results if not isinstance(r, Ok)]
    assert len(winners) == 1
    assert {r.kind for r in losers} == {ErrorKind.SOLD_OUT}

    with TestingSessionLocal() as db:
        assert db.query(Order).count() == 1
        assert db.query(CompensationRecord).count() == len(BUYERS) - 1
        assert db.get(InventoryRecord, "item_1").available_quantity == 0


def test_duplicate_webhooks_create_one_order(coordinator):
    seed_item(quantity=3)
    intent = coordinator.create_intent("buyer_a", "item_1", "show_1").value
    payment = coordinator.initiate_payment(intent.id, "buyer_a").value

    with ThreadPoolExecutor(max_workers=5) as pool:
        results = list(pool.map(
            lambda _: coordinator.confirm_payment(intent.id, payment.external_payment_ref, gateway_confirmed=True),
            range(5),
        ))

    assert all(isinstance(r, Ok) for r in results)
    assert len({r.value.id for r in results}) == 1
    assert sum(1 for r in results if not r.replayed) == 1
    with TestingSessionLocal() as db:
        assert db.query(Order).count() == 1
        assert db.get(InventoryRecord, "item_1").available_quantity == 2
