import logging
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool

from checkout_service.config import settings
from checkout_service.database import Base, engine
from checkout_service.payment_gateway import InvalidPayload, InvalidSignature
from checkout_service.results import Err
from checkout_service.routes import get_coordinator, router

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Live Checkout Reservation Service")

app.include_router(router)

Base.metadata.create_all(bind=engine)


def handle_payment_event(coordinator, event):
    payment_intent = event["data"]["object"]

    if event["type"] not in ("payment_intent.succeeded", "payment_intent.canceled"):
        # payment_failed leaves the PaymentIntent usable; the buyer can retry until the lock runs out
        logger.info(f"Payment {payment_intent['id']}: {event['type']}")
        return "noted" if event["type"] == "payment_intent.payment_failed" else "ignored"

    try:
        intent_id = payment_intent["metadata"]["checkout_intent_id"]
    except KeyError:
        logger.error(f"No checkout_intent_id in metadata of {payment_intent['id']}")
        return "ignored"

    if event["type"] == "payment_intent.canceled":
        result = coordinator.cancel_for_gateway(intent_id, payment_intent["id"])
        if isinstance(result, Err):
            logger.info(f"Cancelled payment {payment_intent['id']} for intent {intent_id}: {result.kind.value}")
            return result.kind.value
        return "cancelled"

    result = coordinator.confirm_payment(intent_id, payment_intent["id"], gateway_confirmed=True)
    if isinstance(result, Err):
        # Redelivery would not change the outcome; flagged payments are already recorded
        logger.warning(f"Payment {payment_intent['id']} for intent {intent_id}: {result.kind.value}")
        return result.kind.value
    return "already_converted" if result.replayed else "converted"


@app.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None),
    coordinator=Depends(get_coordinator),
):
    payload = await request.body()

    try:
        event = coordinator.gateway.verify_webhook_signature(payload, stripe_signature)
    except InvalidPayload:
        raise HTTPException(status_code=400, detail="Invalid payload")
    except InvalidSignature:
        raise HTTPException(status_code=400, detail="Invalid signature")

    outcome = await run_in_threadpool(handle_payment_event, coordinator, event)
    return {"ok": True, "outcome": outcome}
