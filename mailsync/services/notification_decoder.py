"""
Notification Decoder for Gmail push deliveries.

Gmail publishes {"emailAddress", "historyId"} to Pub/Sub. Depending on
how the subscription is configured it reaches us either

- wrapped: {"message": {"data": base64(JSON), "messageId": ...}, "subscription": ...}
- flattened: {"emailAddress": ..., "historyId": ...}

Both decode to the same NotificationEvent. Anything else is Malformed.
"""

import base64
import binascii
import json
from dataclasses import dataclass
from typing import Any, Optional, Union

from mailsync.exceptions import MalformedNotificationError


@dataclass(frozen=True)
class NotificationEvent:
    """A decoded push notification. Deliveries may repeat."""
    email_address: str
    cursor_hint: str
    delivery_id: Optional[str] = None  # Pub/Sub messageId, logging only


def _parse_json(raw: Union[bytes, str]) -> Any:
    try:
        return json.loads(raw)
    except (ValueError, UnicodeDecodeError) as e:
        raise MalformedNotificationError(f"invalid JSON: {e}") from e


def _decode_data(data: Any) -> Any:
    """Decode the base64 (standard or URL-safe) JSON inside a Pub/Sub message."""
    if not isinstance(data, str) or not data.strip():
        raise MalformedNotificationError("no data field")

    normalized = data.strip().replace("-", "+").replace("_", "/")
    normalized += "=" * (-len(normalized) % 4)
    try:
        decoded = base64.b64decode(normalized, validate=True).decode("utf-8")
    except (binascii.Error, ValueError) as e:
        raise MalformedNotificationError(f"decode failed: {e}") from e

    return _parse_json(decoded)


def _event_from_fields(fields: Any, delivery_id: Optional[str]) -> NotificationEvent:
    if not isinstance(fields, dict):
        raise MalformedNotificationError("notification payload is not an object")

    email_address = fields.get("emailAddress")
    history_id = fields.get("historyId")

    if not isinstance(email_address, str) or not email_address.strip():
        raise MalformedNotificationError("missing emailAddress")

    # bool is an int subclass; reject it explicitly
    if isinstance(history_id, bool) or not isinstance(history_id, (int, str)):
        raise MalformedNotificationError("missing historyId")
    cursor_hint = str(history_id).strip()
    if not cursor_hint:
        raise MalformedNotificationError("missing historyId")

    return NotificationEvent(
        email_address=email_address.strip().lower(),
        cursor_hint=cursor_hint,
        delivery_id=delivery_id
    )


def decode_notification(payload: Union[bytes, str, dict]) -> NotificationEvent:
    """
    Decode an inbound push payload into a NotificationEvent.

    Args:
        payload: Raw request body (bytes/str JSON) or an already parsed dict

    Returns:
        NotificationEvent with the mailbox address and cursor hint

    Raises:
        MalformedNotificationError: the payload has no identifiable
            emailAddress/historyId in either supported shape
    """
    if isinstance(payload, (bytes, str)):
        payload = _parse_json(payload)

    if not isinstance(payload, dict):
        raise MalformedNotificationError("notification body is not an object")

    # Pub/Sub wraps the notification in a 'message' object
    if "message" in payload:
        message = payload["message"]
        if not isinstance(message, dict):
            raise MalformedNotificationError("message field is not an object")
        delivery_id = message.get("messageId") or message.get("message_id")
        return _event_from_fields(_decode_data(message.get("data")), delivery_id)

    return _event_from_fields(payload, None)
