"""Action handlers package.

- local.py: Show Modal, Show Banner, Show Notification, Insert Section,
  Redirect URL, Track Event, Wait (inline, best effort)
- webhook.py: Webhook (retried)
- email.py: Send Email (retried)
- tags.py: Add Tag, Remove Tag
- code.py: Custom Code (restricted declarative operations)
- templates.py: {{placeholder}} substitution shared by server actions
"""

from .local import (
    LocalActionRenderer,
    HeadlessRenderer,
    handle_local_action,
)
from .webhook import (
    handle_webhook,
    build_webhook_payload,
    sign_payload,
    SIGNATURE_HEADER,
)
from .email import (
    handle_send_email,
)
from .tags import (
    handle_tag_action,
)
from .code import (
    handle_custom_code,
    parse_operations,
)
from .templates import (
    build_template_context,
    substitute,
    substitute_values,
)

__all__ = [
    "LocalActionRenderer",
    "HeadlessRenderer",
    "handle_local_action",
    "handle_webhook",
    "build_webhook_payload",
    "sign_payload",
    "SIGNATURE_HEADER",
    "handle_send_email",
    "handle_tag_action",
    "handle_custom_code",
    "parse_operations",
    "build_template_context",
    "substitute",
    "substitute_values",
]
