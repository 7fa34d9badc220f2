"""
Intake for signed processor notifications.

Order payments and photographer subscriptions arrive on different URLs but
go through the same steps: verify the signature, claim the idempotency key,
reconcile, and release the key whenever the processor has to redeliver.
"""
import logging
from typing import Any, Awaitable, Callable, Collection, Dict, Union

from fastapi import Request
from fastapi.responses import JSONResponse

from . import config
from .idempotency import IdempotencyStore
from .webhook import Notification, SignatureError, verify

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

Handler = Callable[[Notification], Awaitable[Any]]


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        return {}


async def receive_notification(
    request: Request,
    store: IdempotencyStore,
    handle: Handler,
    *,
    retryable: Collection[str] = (),
    channel: str = "payment",
    key_prefix: str = "",
) -> Union[Dict[str, str], JSONResponse]:
    """
    Run one notification through ``handle`` at most once per idempotency key.

    ``handle`` returns an object with ``status`` (and optionally
    ``order_id``). Outcomes in ``retryable`` and any exception release the
    key so the processor's redelivery is processed again; exceptions are
    answered with 500 to ask for that redelivery. ``key_prefix`` keeps
    channels that may see the same processor resource apart.
    """
    body = await _json_body(request)

    try:
        notification = verify(
            request.headers,
            request.query_params,
            body,
            secret=config.WEBHOOK_SECRET,
            tolerance=config.WEBHOOK_TOLERANCE_SECONDS,
        )
    except SignatureError as e:
        # 200 so the processor does not keep redelivering something we will never accept
        logger.info("%s webhook rejected reason=%s", channel, e.reason)
        return {"status": f"{e.reason}_ignored"}

    key = key_prefix + notification.idempotency_key
    if not await store.claim(key, config.IDEMPOTENCY_TTL_SECONDS):
        logger.info("%s webhook duplicate key=%s", channel, key)
        return {"status": "already_processed"}

    try:
        result = await handle(notification)
    except Exception:
        await store.discard(key)
        logger.exception(
            "%s webhook failed topic=%s id=%s", channel, notification.topic, notification.resource_id
        )
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    if result.status in retryable:
        await store.discard(key)

    logger.info(
        "%s webhook topic=%s id=%s outcome=%s",
        channel, notification.topic, notification.resource_id, result.status,
    )
    return {"status": result.status}
