"""Placeholder substitution for server action settings.

Supported placeholders:
- {{visitorId}}, {{siteId}}, {{timestamp}}
- {{user.<field>}} from the identified user attributes
- {{localStorage.<key>}} from the collected local storage data

Unknown or missing values render as an empty string.
"""

import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][\w.\-]*)\s*\}\}")


def build_template_context(visitor_id: str, site_id: str,
                           identified_user: Optional[Dict[str, Any]] = None,
                           local_storage_data: Optional[Dict[str, Any]] = None,
                           timestamp: Optional[str] = None) -> Dict[str, Any]:
    """Context dict shared by every handler of one job."""
    return {
        "visitor_id": visitor_id,
        "site_id": site_id,
        "identified_user": identified_user or {},
        "local_storage_data": local_storage_data or {},
        "timestamp": timestamp or datetime.now(timezone.utc).isoformat(),
    }


def _resolve(name: str, context: Dict[str, Any]) -> str:
    if name == "visitorId":
        value = context.get("visitor_id")
    elif name == "siteId":
        value = context.get("site_id")
    elif name == "timestamp":
        value = context.get("timestamp")
    elif name.startswith("user."):
        value = (context.get("identified_user") or {}).get(name[len("user."):])
    elif name.startswith("localStorage."):
        value = (context.get("local_storage_data") or {}).get(name[len("localStorage."):])
    else:
        value = None
    return "" if value is None else str(value)


def substitute(template: Optional[str], context: Dict[str, Any]) -> str:
    """Replace every placeholder in ``template``."""
    if not template:
        return template or ""
    return PLACEHOLDER_PATTERN.sub(lambda m: _resolve(m.group(1), context), template)


def substitute_values(value: Any, context: Dict[str, Any]) -> Any:
    """Recursively substitute placeholders in every string of a JSON value."""
    if isinstance(value, str):
        return substitute(value, context)
    if isinstance(value, dict):
        return {k: substitute_values(v, context) for k, v in value.items()}
    if isinstance(value, list):
        return [substitute_values(v, context) for v in value]
    return value
