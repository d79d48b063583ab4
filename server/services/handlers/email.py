"""Send Email action handler (Resend-compatible HTTP API)."""

import time
from datetime import datetime
from typing import Any, Dict, Optional

import httpx

from core.logging import get_logger
from models.nodes import SendEmailSettings
from services.execution.errors import DeliveryError
from .templates import substitute

logger = get_logger(__name__)


async def handle_send_email(
    node_id: str,
    settings: SendEmailSettings,
    context: Dict[str, Any],
    client: httpx.AsyncClient,
    api_key: Optional[str] = None,
    api_url: str = "https://api.resend.com/emails",
    sender: str = "no-reply@example.com",
    timeout: float = 10.0
) -> Dict[str, Any]:
    """Handle one email delivery attempt.

    Without an API key the send is simulated: logged and reported as success.

    Returns:
        Execution result dict with the rendered message
    """
    start_time = time.time()
    message = {
        "from": sender,
        "to": [substitute(settings.email_to, context)],
        "subject": substitute(settings.email_subject, context),
        "html": substitute(settings.email_body, context),
    }

    if not api_key:
        logger.info("[Email] No provider key configured, simulating send",
                    node_id=node_id, to=message["to"], subject=message["subject"])
        return {
            "success": True,
            "node_id": node_id,
            "node_type": "Send Email",
            "result": {"simulated": True, "to": message["to"]},
            "payload": message,
            "execution_time": time.time() - start_time,
            "timestamp": datetime.now().isoformat()
        }

    try:
        response = await client.post(
            api_url,
            json=message,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=timeout,
        )
        if not response.is_success:
            raise DeliveryError(f"Email provider error: {response.status_code} {response.text[:200]}".strip(),
                                status_code=response.status_code)

        try:
            provider_id = response.json().get("id")
        except ValueError:
            provider_id = None

        logger.info("[Email] Sent", node_id=node_id, to=message["to"], provider_id=provider_id)
        return {
            "success": True,
            "node_id": node_id,
            "node_type": "Send Email",
            "result": {"simulated": False, "to": message["to"], "id": provider_id},
            "payload": message,
            "execution_time": time.time() - start_time,
            "timestamp": datetime.now().isoformat()
        }

    except (DeliveryError, httpx.HTTPError) as e:
        error = str(e) or type(e).__name__
        logger.warning("Email attempt failed", node_id=node_id, error=error)
        return {
            "success": False,
            "node_id": node_id,
            "node_type": "Send Email",
            "error": error,
            "payload": message,
            "execution_time": time.time() - start_time,
            "timestamp": datetime.now().isoformat()
        }
