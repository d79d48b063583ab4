"""Local (best-effort) action handlers.

UI actions are rendered by whatever page-side integration is plugged in as
the ``LocalActionRenderer``; only their success/failure outcome matters to
the engine. ``HeadlessRenderer`` records what would have been shown.
"""

import asyncio
import time
from datetime import datetime
from typing import Any, Dict, List, Protocol

from constants import ACTION_REDIRECT_URL, ACTION_WAIT
from core.logging import get_logger
from models.nodes import BaseNodeSettings

logger = get_logger(__name__)


class LocalActionRenderer(Protocol):
    """Renders a local action. Returns True when the action took effect."""

    async def render(self, title: str, settings: BaseNodeSettings, context: Dict[str, Any]) -> bool:
        ...


class HeadlessRenderer:
    """Renderer without a page: records every rendered action."""

    def __init__(self):
        self.rendered: List[Dict[str, Any]] = []

    async def render(self, title: str, settings: BaseNodeSettings, context: Dict[str, Any]) -> bool:
        self.rendered.append({
            "title": title,
            "settings": settings.model_dump(by_alias=True, exclude={"title"}),
            "visitor_id": context.get("visitor_id"),
        })
        return True


async def handle_local_action(
    node_id: str,
    settings: BaseNodeSettings,
    context: Dict[str, Any],
    renderer: LocalActionRenderer
) -> Dict[str, Any]:
    """Execute a local action inline and report its outcome."""
    start_time = time.time()
    title = settings.title

    try:
        if title == ACTION_WAIT:
            await asyncio.sleep(settings.wait_seconds)
            ok = True
        elif title == ACTION_REDIRECT_URL and not settings.redirect_url:
            raise ValueError("No redirect URL configured")
        else:
            ok = await renderer.render(title, settings, context)

        return {
            "success": bool(ok),
            "node_id": node_id,
            "node_type": title,
            "error": None if ok else f"{title} was not rendered",
            "execution_time": time.time() - start_time,
            "timestamp": datetime.now().isoformat()
        }

    except Exception as e:
        logger.warning("Local action failed", node_id=node_id, title=title, error=str(e))
        return {
            "success": False,
            "node_id": node_id,
            "node_type": title,
            "error": str(e),
            "execution_time": time.time() - start_time,
            "timestamp": datetime.now().isoformat()
        }
