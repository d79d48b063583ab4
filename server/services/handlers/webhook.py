"""Webhook action handler."""

import hashlib
import hmac
import json
import time
from datetime import datetime
from typing import Any, Dict, Optional

import httpx
import orjson

from core.logging import get_logger
from models.nodes import WebhookSettings
from services.execution.errors import DeliveryError
from .templates import substitute

logger = get_logger(__name__)

SIGNATURE_HEADER = "X-Workflow-Signature"


def build_webhook_payload(settings: WebhookSettings, context: Dict[str, Any]) -> Dict[str, Any]:
    """Base payload merged with the templated custom body.

    A body that is not valid JSON after substitution is sent as ``customData``.
    """
    custom: Dict[str, Any] = {}
    if settings.webhook_body:
        rendered = substitute(settings.webhook_body, context)
        try:
            parsed = json.loads(rendered)
            custom = parsed if isinstance(parsed, dict) else {"customData": parsed}
        except json.JSONDecodeError:
            logger.warning("Failed to parse custom webhook body, sending as string")
            custom = {"customData": rendered}

    return {
        "visitorId": context.get("visitor_id"),
        "identifiedUser": context.get("identified_user") or {},
        "localStorageData": context.get("local_storage_data") or {},
        "timestamp": context.get("timestamp"),
        **custom,
    }


def sign_payload(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the exact request body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


async def handle_webhook(
    node_id: str,
    settings: WebhookSettings,
    context: Dict[str, Any],
    client: httpx.AsyncClient,
    hmac_secret: Optional[str] = None,
    timeout: float = 10.0
) -> Dict[str, Any]:
    """Handle one webhook delivery attempt.

    Args:
        node_id: The action node ID
        settings: Typed webhook settings
        context: Template context (visitor, site, user, local storage)
        client: Shared httpx client
        hmac_secret: Signs the JSON payload when set
        timeout: Request timeout in seconds

    Returns:
        Execution result dict. Non-2xx responses are failures.
    """
    start_time = time.time()
    payload = build_webhook_payload(settings, context)

    try:
        body = orjson.dumps(payload)
        headers = {"Content-Type": "application/json"}
        for key, value in settings.webhook_headers.items():
            headers[key] = substitute(value, context)
        if hmac_secret:
            headers[SIGNATURE_HEADER] = sign_payload(body, hmac_secret)

        logger.info("[Webhook] Sending", node_id=node_id, method=settings.webhook_method, url=settings.webhook_url)

        response = await client.request(
            settings.webhook_method,
            settings.webhook_url,
            headers=headers,
            content=body,
            timeout=timeout,
        )
        if not response.is_success:
            raise DeliveryError(f"Webhook failed: {response.status_code} {response.text[:200]}".strip(),
                                status_code=response.status_code)

        return {
            "success": True,
            "node_id": node_id,
            "node_type": "Webhook",
            "result": {"status": response.status_code, "url": settings.webhook_url,
                       "method": settings.webhook_method},
            "payload": payload,
            "execution_time": time.time() - start_time,
            "timestamp": datetime.now().isoformat()
        }

    except (DeliveryError, httpx.HTTPError) as e:
        error = str(e) or type(e).__name__
        logger.warning("Webhook attempt failed", node_id=node_id, url=settings.webhook_url, error=error)
        return {
            "success": False,
            "node_id": node_id,
            "node_type": "Webhook",
            "error": error,
            "payload": payload,
            "execution_time": time.time() - start_time,
            "timestamp": datetime.now().isoformat()
        }
