"""Add Tag / Remove Tag action handlers."""

import time
from datetime import datetime
from typing import Any, Dict, Union

from core.logging import get_logger
from models.nodes import AddTagSettings, RemoveTagSettings
from services.visitors import VisitorService
from .templates import substitute

logger = get_logger(__name__)


async def handle_tag_action(
    node_id: str,
    settings: Union[AddTagSettings, RemoveTagSettings],
    context: Dict[str, Any],
    visitors: VisitorService
) -> Dict[str, Any]:
    """Upsert or pull a tag from the visitor's tag set."""
    start_time = time.time()
    tag = substitute(settings.tag_name, context)
    site_id = context.get("site_id")
    visitor_id = context.get("visitor_id")

    try:
        if settings.title == "Add Tag":
            await visitors.add_tag(site_id, visitor_id, tag)
            changed = True
        else:
            changed = await visitors.remove_tag(site_id, visitor_id, tag)

        return {
            "success": True,
            "node_id": node_id,
            "node_type": settings.title,
            "result": {"tagName": tag, "changed": changed},
            "execution_time": time.time() - start_time,
            "timestamp": datetime.now().isoformat()
        }

    except Exception as e:
        logger.error("Tag action failed", node_id=node_id, tag=tag, error=str(e))
        return {
            "success": False,
            "node_id": node_id,
            "node_type": settings.title,
            "error": str(e),
            "execution_time": time.time() - start_time,
            "timestamp": datetime.now().isoformat()
        }
