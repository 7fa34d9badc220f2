import os
import json
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

ORDER_CREATED = "order.created"
ORDER_PAID = "order.paid"

EXCHANGE = os.getenv("EVENT_EXCHANGE", "schoolphotos.events")

_sqs_client = None


def _json_default(o: Any) -> Any:
    if isinstance(o, Decimal):
        return str(o)
    raise TypeError(f"{type(o).__name__} is not JSON serializable")


def _message(event_type: str, payload: Dict[str, Any]) -> str:
    return json.dumps({"type": event_type, "payload": payload}, default=_json_default)


def _to_rabbitmq(event_type: str, body: str) -> None:
    import pika

    url = os.getenv("RABBITMQ_URL")
    if not url:
        raise RuntimeError("RABBITMQ_URL is not set")

    params = pika.URLParameters(url)
    params.heartbeat = int(os.getenv("RABBITMQ_HEARTBEAT", "30"))
    params.blocked_connection_timeout = float(os.getenv("RABBITMQ_BLOCKED_TIMEOUT", "5"))

    conn = pika.BlockingConnection(params)
    try:
        channel = conn.channel()
        channel.exchange_declare(exchange=EXCHANGE, exchange_type="topic", durable=True)
        channel.basic_publish(
            exchange=EXCHANGE,
            routing_key=event_type,
            body=body.encode("utf-8"),
            properties=pika.BasicProperties(delivery_mode=2, content_type="application/json"),
        )
    finally:
        if conn.is_open:
            conn.close()


def _to_sqs(event_type: str, body: str) -> None:
    global _sqs_client
    import boto3

    queue_url = os.getenv("SQS_QUEUE_URL")
    if not queue_url:
        raise RuntimeError("SQS_QUEUE_URL is not set")
    if _sqs_client is None:
        _sqs_client = boto3.client("sqs")

    _sqs_client.send_message(
        QueueUrl=queue_url,
        MessageBody=body,
        MessageAttributes={"type": {"DataType": "String", "StringValue": event_type}},
    )


_TRANSPORTS = {
    "rabbitmq": _to_rabbitmq,
    "sqs": _to_sqs,
}


def publish(event_type: str, payload: Dict[str, Any], *, safe: bool = False) -> None:
    """
    Send a domain event to the broker selected by EVENT_BACKEND
    (rabbitmq | sqs | none).

    With safe=True a failure is logged and dropped, so a broker outage never
    changes the outcome of the request that produced the event.
    """
    backend = os.getenv("EVENT_BACKEND", "rabbitmq").strip().lower()
    if backend == "none":
        return

    try:
        transport = _TRANSPORTS.get(backend)
        if transport is None:
            raise RuntimeError(f"Unsupported EVENT_BACKEND={backend}")
        transport(event_type, _message(event_type, payload))
    except Exception as e:
        if not safe:
            raise
        logger.warning("event publish failed type=%s error=%r", event_type, e)


def order_created(order) -> None:
    publish(
        ORDER_CREATED,
        {"order_id": order.id, "email": order.customer_email, "total": order.total_amount},
        safe=True,
    )


def order_paid(order_id: str, email: str, total: Decimal, payment_reference: Optional[str]) -> None:
    publish(
        ORDER_PAID,
        {"order_id": order_id, "email": email, "total": total, "payment_reference": payment_reference},
        safe=True,
    )
