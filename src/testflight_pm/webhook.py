from __future__ import annotations

import hashlib
import hmac
import json
import logging
from typing import Any

from testflight_pm.models import FeedbackRecord
from testflight_pm.sources.testflight import crash_resource_to_record, screenshot_resource_to_record

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-apple-signature"

_EVENT_RESOURCES = {
    "BETA_FEEDBACK_CRASH_SUBMISSION": ("betaFeedbackCrashSubmission", crash_resource_to_record),
    "BETA_FEEDBACK_SCREENSHOT_SUBMISSION": ("betaFeedbackScreenshotSubmission", screenshot_resource_to_record),
}


class WebhookError(ValueError):
    """Raised when a webhook delivery cannot be turned into feedback."""


def verify_signature(secret: str, payload: bytes, signature: str | None) -> bool:
    """Check an HMAC-SHA256 hex signature, with or without a ``sha256=`` prefix."""
    if not secret or not signature:
        return False
    provided = signature.strip()
    if provided.startswith("sha256="):
        provided = provided[len("sha256="):]
    expected = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected.encode("ascii"), provided.lower().encode("utf-8"))


def parse_webhook_event(payload: bytes | str | dict[str, Any], default_bundle_id: str = "") -> FeedbackRecord:
    if isinstance(payload, (bytes, str)):
        try:
            event = json.loads(payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise WebhookError(f"Webhook body is not valid JSON: {exc}") from exc
    else:
        event = payload

    if not isinstance(event, dict):
        raise WebhookError("Webhook body must be a JSON object")

    event_type = event.get("eventType")
    if event_type not in _EVENT_RESOURCES:
        raise WebhookError(f"Unsupported webhook event type: {event_type}")

    resource_key, convert = _EVENT_RESOURCES[event_type]
    resource = (event.get("data") or {}).get(resource_key)
    if not isinstance(resource, dict):
        raise WebhookError(f"Missing {resource_key} data in {event_type} event")

    attributes = dict(resource.get("attributes") or {})
    if not (attributes.get("submittedAt") or attributes.get("createdDate")) and event.get("eventTime"):
        attributes["submittedAt"] = event["eventTime"]

    record = convert({**resource, "attributes": attributes}, default_bundle_id)
    if record is None:
        raise WebhookError(f"{event_type} event has no usable feedback id or submission time")

    logger.info("Parsed %s webhook event for feedback %s", event_type, record.id)
    return record
