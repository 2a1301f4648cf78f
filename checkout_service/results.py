"""
Tagged results returned by every coordinator operation.

Callers branch on ``isinstance(result, Err)`` and ``result.kind`` instead of
catching exceptions, so retries, webhook no-ops and user-facing messages are
decided at the edge.
"""

import enum
from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

T = TypeVar("T")


class ErrorKind(str, enum.Enum):
    ITEM_UNAVAILABLE = "item_unavailable"
    INTENT_EXPIRED = "intent_expired"
    INVALID_STATE = "invalid_state"
    GATEWAY_ERROR = "gateway_error"
    SOLD_OUT = "sold_out"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    PAYMENT_PENDING = "payment_pending"
    INVALID_INPUT = "invalid_input"


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T
    # True when the call repeated an already-applied step (e.g. AlreadyConverted)
    replayed: bool = False

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    message: str = ""
    detail: Any = None

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[T], Err]


EXPIRED_MESSAGE = "This session expired, the item has been released."
SOLD_OUT_MESSAGE = "This item just sold out. Your payment will be reversed."


def user_message(err: Err) -> str:
    if err.kind in (ErrorKind.INTENT_EXPIRED, ErrorKind.INVALID_STATE):
        return EXPIRED_MESSAGE
    if err.kind == ErrorKind.SOLD_OUT:
        return SOLD_OUT_MESSAGE
    if err.kind == ErrorKind.ITEM_UNAVAILABLE:
        return "This item is no longer available."
    if err.kind == ErrorKind.GATEWAY_ERROR:
        return "We could not start the payment. Please try again."
    if err.kind == ErrorKind.PAYMENT_PENDING:
        return "Payment is still processing."
    return err.message or err.kind.value
