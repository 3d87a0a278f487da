import json
import html
import logging
from typing import Any, Dict, List, Optional, Tuple

from .emailer import send_email

logger = logging.getLogger("notification-service")
logging.basicConfig(level=logging.INFO)

SHOP_NAME = "SmartHub Computers"


def _short(order_id: Any) -> str:
    return str(order_id or "")[-8:]


def handle_event(event_type: str, payload: Dict[str, Any]) -> None:
    """
    Handle payment outcome events.
    payload example:
      payment.confirmed: { "email": "...", "order_id": "...", "amount": "1000.00", "receipt": "..." }
      payment.failed:    { "email": "...", "order_id": "...", "amount": "1000.00", "reason": "..." }
    """
    if event_type not in ("payment.confirmed", "payment.failed"):
        logger.info("Ignoring event_type=%s", event_type)
        return

    email = payload.get("email")
    if not email:
        # orphaned payment rows have no order to take an address from
        logger.warning("No recipient for %s order=%s", event_type, payload.get("order_id"))
        return

    order_ref = html.escape(_short(payload.get("order_id")))
    name = html.escape(payload.get("customer_name") or "there")
    amount = html.escape(str(payload.get("amount") or ""))

    if event_type == "payment.confirmed":
        receipt = html.escape(str(payload.get("receipt") or ""))
        send_email(
            to_email=email,
            subject=f"Payment confirmed - {SHOP_NAME}",
            html_body=(
                f"<h3>Thank you, {name}</h3>"
                f"<p>We received KES <b>{amount}</b> for order <b>#{order_ref}</b>.</p>"
                f"<p>M-Pesa receipt: <b>{receipt}</b></p>"
                "<p>Your order is now being prepared.</p>"
            ),
        )
        logger.info("Sent payment confirmation to %s (order #%s)", email, order_ref)
        return

    reason = html.escape(str(payload.get("reason") or "The payment was not completed"))
    send_email(
        to_email=email,
        subject=f"Payment not completed - {SHOP_NAME}",
        html_body=(
            f"<h3>Hi {name}</h3>"
            f"<p>Your M-Pesa payment of KES <b>{amount}</b> for order <b>#{order_ref}</b> did not go through.</p>"
            f"<p>Reason: {reason}</p>"
            "<p>You can retry the payment from your cart.</p>"
        ),
    )
    logger.info("Sent payment failure notice to %s (order #%s)", email, order_ref)


def _try_parse_json(s: Any) -> Optional[Dict[str, Any]]:
    if isinstance(s, dict):
        return s
    if not isinstance(s, str):
        return None
    s = s.strip()
    if not s:
        return None
    try:
        obj = json.loads(s)
    except ValueError:
        return None
    return obj if isinstance(obj, dict) else None


def _parse_message(obj: Dict[str, Any]) -> Optional[Tuple[str, Dict[str, Any]]]:
    """
    Expected message format:
      { "type": "payment.confirmed", "payload": {...} }
    """
    event_type = obj.get("type") or obj.get("event_type")
    payload = obj.get("payload") or {}
    if not isinstance(event_type, str) or not isinstance(payload, dict):
        return None
    return event_type, payload


def _handle_sqs_batch(event: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    SQS trigger: return the partial batch response shape
      { "batchItemFailures": [ {"itemIdentifier": "<messageId>"}, ...] }
    so only failed messages are retried.
    """
    records = event.get("Records")
    if not isinstance(records, list) or not records:
        return None

    failures: List[Dict[str, str]] = []
    processed = 0

    for r in records:
        message_id = r.get("messageId") or r.get("message_id") or ""
        body = r.get("body")
        obj = _try_parse_json(body)
        parsed = _parse_message(obj) if obj else None

        if not parsed:
            logger.warning("Bad SQS message id=%s body=%s", message_id, body)
            # treat as failure so it can go to DLQ after retries
            if message_id:
                failures.append({"itemIdentifier": message_id})
            continue

        event_type, payload = parsed
        try:
            handle_event(event_type, payload)
            processed += 1
        except Exception as e:
            logger.exception("Failed processing message_id=%s error=%r", message_id, e)
            if message_id:
                failures.append({"itemIdentifier": message_id})

    logger.info("SQS batch processed=%s failures=%s", processed, len(failures))
    return {"batchItemFailures": failures}


def _extract_eventbridge(event: Dict[str, Any]) -> Optional[Tuple[str, Dict[str, Any]]]:
    detail_type = event.get("detail-type") or event.get("detailType")
    detail = event.get("detail")
    if isinstance(detail_type, str) and isinstance(detail, dict):
        return detail_type, detail
    return None


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    if not isinstance(event, dict):
        logger.warning("Unsupported event type: %s", type(event))
        return {"ok": False, "error": "Unsupported event format"}

    logger.info("Received event keys: %s", list(event.keys()))

    sqs_resp = _handle_sqs_batch(event)
    if sqs_resp is not None:
        return sqs_resp

    eb = _extract_eventbridge(event)
    if eb:
        handle_event(*eb)
        return {"ok": True, "source": "eventbridge"}

    direct = _parse_message(event)
    if direct:
        handle_event(*direct)
        return {"ok": True, "source": "direct"}

    logger.warning("Unsupported event format: %s", event)
    return {"ok": False, "error": "Unsupported event format"}
