import os
import json
import logging
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

EXCHANGE = os.getenv("EVENT_EXCHANGE", "smarthub.events")

# Reuse AWS client across invocations (Lambda-friendly)
_sqs_client = None

# In-process subscribers for EVENT_BACKEND=local (dev and tests)
_local_handlers: List[Callable[[str, Dict[str, Any]], None]] = []


def subscribe_local(handler: Callable[[str, Dict[str, Any]], None]) -> Callable[[], None]:
    """Register an in-process handler; returns a function that removes it."""
    _local_handlers.append(handler)

    def _remove() -> None:
        if handler in _local_handlers:
            _local_handlers.remove(handler)

    return _remove


def publish(event_type: str, payload: Dict[str, Any], *, safe: bool = False) -> None:
    """
    Publish an event to the configured backend.

    safe=True: swallow exceptions (log only). Used on webhook paths, where a
    broken event backend must not change the answer given to the gateway.
    """
    backend = os.getenv("EVENT_BACKEND", "rabbitmq").strip().lower()  # rabbitmq | sqs | local

    try:
        if backend == "rabbitmq":
            _publish_rabbitmq(event_type, payload)
            return

        if backend == "sqs":
            _publish_sqs(event_type, payload)
            return

        if backend == "local":
            _publish_local(event_type, payload)
            return

        raise RuntimeError(f"Unsupported EVENT_BACKEND={backend}")

    except Exception as e:
        if safe:
            logger.warning("event publish failed type=%s error=%r", event_type, e)
            return
        raise


def _encode(event_type: str, payload: Dict[str, Any]) -> str:
    # Decimal amounts and datetimes are stringified
    return json.dumps({"type": event_type, "payload": payload}, default=str)


def _publish_local(event_type: str, payload: Dict[str, Any]) -> None:
    for handler in list(_local_handlers):
        handler(event_type, payload)


def _publish_rabbitmq(event_type: str, payload: Dict[str, Any]) -> None:
    # Import here so Lambda zip can omit pika if you only use SQS
    import pika

    rabbitmq_url = os.getenv("RABBITMQ_URL")
    if not rabbitmq_url:
        raise RuntimeError("RABBITMQ_URL is not set")

    params = pika.URLParameters(rabbitmq_url)
    params.heartbeat = int(os.getenv("RABBITMQ_HEARTBEAT", "30"))
    params.blocked_connection_timeout = float(os.getenv("RABBITMQ_BLOCKED_TIMEOUT", "5"))

    socket_timeout = os.getenv("RABBITMQ_SOCKET_TIMEOUT")
    if socket_timeout is not None:
        params.socket_timeout = float(socket_timeout)

    conn = pika.BlockingConnection(params)
    try:
        ch = conn.channel()
        ch.exchange_declare(exchange=EXCHANGE, exchange_type="topic", durable=True)
        ch.basic_publish(
            exchange=EXCHANGE,
            routing_key=event_type,
            body=_encode(event_type, payload).encode("utf-8"),
            properties=pika.BasicProperties(delivery_mode=2),
        )
    finally:
        conn.close()


def _publish_sqs(event_type: str, payload: Dict[str, Any]) -> None:
    global _sqs_client
    import boto3

    queue_url = os.getenv("SQS_QUEUE_URL")
    if not queue_url:
        raise RuntimeError("SQS_QUEUE_URL is not set")

    if _sqs_client is None:
        _sqs_client = boto3.client("sqs")

    _sqs_client.send_message(
        QueueUrl=queue_url,
        MessageBody=_encode(event_type, payload),
        MessageAttributes={
            "type": {"DataType": "String", "StringValue": event_type}
        },
    )
