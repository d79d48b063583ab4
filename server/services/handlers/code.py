"""Custom Code action handler.

Custom code is a JSON list of declarative operations, not an executable
script. Supported operations:

    {"op": "set_tag", "tag": "vip"}
    {"op": "remove_tag", "tag": "trial"}
    {"op": "track_event", "name": "upgraded", "data": {...}}
    {"op": "log", "message": "Visitor {{visitorId}} reached checkout"}

A top-level object with an "operations" list is accepted too. String values
go through placeholder substitution. Any failure is captured and reported as
a failed result.
"""

import json
import time
from datetime import datetime
from typing import Any, Dict, List

from core.logging import get_logger
from models.nodes import CustomCodeSettings
from services.execution.errors import CustomCodeError
from services.visitors import VisitorService
from .templates import substitute_values

logger = get_logger(__name__)

ALLOWED_OPERATIONS = frozenset(["set_tag", "remove_tag", "track_event", "log"])

MAX_OPERATIONS = 50


def parse_operations(code: str) -> List[Dict[str, Any]]:
    """Parse and validate the operation list.

    Raises:
        CustomCodeError: On invalid JSON, unknown operations or missing fields.
    """
    if not code or not code.strip():
        raise CustomCodeError("No code provided")
    try:
        parsed = json.loads(code)
    except json.JSONDecodeError as e:
        raise CustomCodeError(f"Custom code must be a JSON operation list: {e.msg}") from e

    if isinstance(parsed, dict):
        parsed = parsed.get("operations")
    if not isinstance(parsed, list):
        raise CustomCodeError("Custom code must be a list of operations")
    if len(parsed) > MAX_OPERATIONS:
        raise CustomCodeError(f"Too many operations ({len(parsed)} > {MAX_OPERATIONS})")

    for index, operation in enumerate(parsed):
        if not isinstance(operation, dict):
            raise CustomCodeError(f"Operation {index} is not an object")
        op = operation.get("op")
        if op not in ALLOWED_OPERATIONS:
            raise CustomCodeError(f"Operation {index}: unsupported op {op!r}")
        if op in ("set_tag", "remove_tag") and not operation.get("tag"):
            raise CustomCodeError(f"Operation {index}: {op} requires a tag")
        if op == "track_event" and not operation.get("name"):
            raise CustomCodeError(f"Operation {index}: track_event requires a name")
    return parsed


async def handle_custom_code(
    node_id: str,
    settings: CustomCodeSettings,
    context: Dict[str, Any],
    visitors: VisitorService
) -> Dict[str, Any]:
    """Run a restricted operation list for the visitor."""
    start_time = time.time()
    site_id = context.get("site_id")
    visitor_id = context.get("visitor_id")
    logs: List[str] = []
    events: List[Dict[str, Any]] = []

    try:
        operations = [substitute_values(op, context) for op in parse_operations(settings.custom_code)]

        for operation in operations:
            op = operation["op"]
            if op == "set_tag":
                await visitors.add_tag(site_id, visitor_id, str(operation["tag"]))
            elif op == "remove_tag":
                await visitors.remove_tag(site_id, visitor_id, str(operation["tag"]))
            elif op == "track_event":
                event = {"name": operation["name"], "data": operation.get("data") or {}}
                events.append(event)
                logger.info("[Custom Code] Event tracked", node_id=node_id, visitor_id=visitor_id, **event)
            elif op == "log":
                message = str(operation.get("message", ""))
                logs.append(message)
                logger.info("[Custom Code] Log", node_id=node_id, message=message)

        return {
            "success": True,
            "node_id": node_id,
            "node_type": "Custom Code",
            "result": {"operations": len(operations), "events": events, "logs": logs},
            "execution_time": time.time() - start_time,
            "timestamp": datetime.now().isoformat()
        }

    except Exception as e:
        logger.error("Custom code failed", node_id=node_id, error=str(e))
        return {
            "success": False,
            "node_id": node_id,
            "node_type": "Custom Code",
            "error": str(e),
            "result": {"events": events, "logs": logs},
            "execution_time": time.time() - start_time,
            "timestamp": datetime.now().isoformat()
        }
