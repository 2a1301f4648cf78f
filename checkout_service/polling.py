import logging
import time
from tenacity import (
    Retrying,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
)

from checkout_service.config import settings
from checkout_service.payment_gateway import GatewayError

logger = logging.getLogger(__name__)


def wait_for_settlement(gateway, external_ref, max_attempts=None, max_wait=None, sleep=time.sleep):
    """Ask the gateway until the payment settles or the attempts run out.

    Bounded exponential backoff at the request boundary; the coordinator
    itself never waits. Returns the last PaymentStatus seen, settled or not.
    Raises GatewayError if the last attempt failed.
    """
    retrying = Retrying(
        stop=stop_after_attempt(max_attempts or settings.poll_max_attempts),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=max_wait or settings.poll_max_wait_seconds),
        retry=retry_if_result(lambda status: not status.settled) | retry_if_exception_type(GatewayError),
        retry_error_callback=lambda state: state.outcome.result(),
        sleep=sleep,
    )
    status = retrying(gateway.get_payment_status, external_ref)
    if not status.settled:
        logger.info(f"Payment {external_ref} still {status.status} after polling")
    return status
