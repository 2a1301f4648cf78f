from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from checkout_service import compensation
from checkout_service.auth import current_user
from checkout_service.compensation import CompensationProcessor
from checkout_service.coordinator import ReservationCoordinator
from checkout_service.database import SessionLocal
from checkout_service.events import default_publisher
from checkout_service.payment_gateway import GatewayError, StripeGateway
from checkout_service.polling import wait_for_settlement
from checkout_service.results import Err, ErrorKind, user_message

router = APIRouter()

gateway = StripeGateway()
publisher = default_publisher()

STATUS_CODES = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.ITEM_UNAVAILABLE: 409,
    ErrorKind.INVALID_STATE: 409,
    ErrorKind.INTENT_EXPIRED: 410,
    ErrorKind.SOLD_OUT: 410,
    ErrorKind.INVALID_INPUT: 422,
    ErrorKind.GATEWAY_ERROR: 502,
}


class CreateIntentRequest(BaseModel):
    item_id: str
    show_id: str
    quantity: int = Field(default=1, ge=1)


def get_coordinator():
    return ReservationCoordinator(SessionLocal, gateway, publisher)


def raise_for(err: Err):
    raise HTTPException(
        status_code=STATUS_CODES.get(err.kind, 400),
        detail={"error": err.kind.value, "message": user_message(err)},
    )


def intent_payload(intent, order=None):
    data = intent.to_dict()
    data["order_id"] = order.id if order else None
    data["completion_code"] = order.completion_code if order else None
    return data


@router.get("/health")
def health():
    return {"status": "ok", "service": "checkout-service"}


@router.post("/checkout-intents", status_code=201)
def create_checkout_intent(
    request: CreateIntentRequest,
    user=Depends(current_user),
    coordinator=Depends(get_coordinator),
):
    result = coordinator.create_intent(user.id, request.item_id, request.show_id, request.quantity)
    if isinstance(result, Err):
        raise_for(result)
    return intent_payload(result.value)


@router.post("/checkout-intents/{intent_id}/payment")
def initiate_payment(intent_id: str, user=Depends(current_user), coordinator=Depends(get_coordinator)):
    result = coordinator.initiate_payment(intent_id, user.id)
    if isinstance(result, Err):
        raise_for(result)
    payment = result.value
    return {
        "client_secret": payment.client_secret,
        "lock_expires_at": payment.lock_expires_at.isoformat(),
        "payment_intent_id": payment.external_payment_ref,
    }


@router.get("/checkout-intents/{intent_id}")
def get_checkout_intent(intent_id: str, user=Depends(current_user), coordinator=Depends(get_coordinator)):
    result = coordinator.get_intent(intent_id, user.id)
    if isinstance(result, Err):
        raise_for(result)
    return intent_payload(result.value.intent, result.value.order)


@router.post("/checkout-intents/{intent_id}/confirm")
def confirm_checkout_intent(intent_id: str, user=Depends(current_user), coordinator=Depends(get_coordinator)):
    """Client poll path: ask the gateway whether the payment settled, then convert."""
    view = coordinator.get_intent(intent_id, user.id)
    if isinstance(view, Err):
        raise_for(view)
    intent, order = view.value.intent, view.value.order
    if order is not None:
        return {"order": order.to_dict(), "already_converted": True}
    if not intent.external_payment_ref:
        raise_for(Err(ErrorKind.INVALID_STATE, "No payment started for this intent"))

    try:
        status = wait_for_settlement(coordinator.gateway, intent.external_payment_ref)
    except GatewayError as e:
        raise_for(Err(ErrorKind.GATEWAY_ERROR, str(e)))
    if not status.settled:
        return JSONResponse(status_code=202, content={"status": "pending", "payment_status": status.status})

    result = coordinator.confirm_payment(intent_id, intent.external_payment_ref, gateway_confirmed=True)
    if isinstance(result, Err):
        raise_for(result)
    return {"order": result.value.to_dict(), "already_converted": result.replayed}


@router.post("/checkout-intents/{intent_id}/cancel")
def cancel_checkout_intent(intent_id: str, user=Depends(current_user), coordinator=Depends(get_coordinator)):
    result = coordinator.cancel_intent(intent_id, user)
    if isinstance(result, Err):
        raise_for(result)
    return {"status": result.value.status}


@router.get("/compensations")
def list_compensations(user=Depends(current_user)):
    if not user.is_operator:
        raise HTTPException(status_code=403, detail="Operators only")
    with SessionLocal() as db:
        return [record.to_dict() for record in compensation.list_open(db)]


@router.post("/compensations/refund")
def refund_compensations(user=Depends(current_user)):
    if not user.is_operator:
        raise HTTPException(status_code=403, detail="Operators only")
    return CompensationProcessor(SessionLocal, gateway).run_once()
