"""Centralized constants for node titles, kinds and lifecycle events.

Single source of truth for the node title strings used by workflow graphs,
the trigger detector, the executor and the execution worker.
"""

from typing import FrozenSet

# =============================================================================
# NODE KINDS
# =============================================================================

NODE_KIND_TRIGGER = 'Trigger'
NODE_KIND_CONDITION = 'Condition'
NODE_KIND_ACTION = 'Action'

NODE_KINDS: FrozenSet[str] = frozenset([
    NODE_KIND_TRIGGER,
    NODE_KIND_CONDITION,
    NODE_KIND_ACTION,
])

# =============================================================================
# WORKFLOW STATUS
# =============================================================================

WORKFLOW_STATUS_ACTIVE = 'Active'
WORKFLOW_STATUS_PAUSED = 'Paused'
WORKFLOW_STATUS_DRAFT = 'Draft'

WORKFLOW_STATUSES: FrozenSet[str] = frozenset([
    WORKFLOW_STATUS_ACTIVE,
    WORKFLOW_STATUS_PAUSED,
    WORKFLOW_STATUS_DRAFT,
])

# =============================================================================
# TRIGGER TITLES
# =============================================================================

TRIGGER_PAGE_VIEW = 'Page View'
TRIGGER_TIME_SPENT = 'Time Spent'
TRIGGER_SCROLL_DEPTH = 'Scroll Depth'
TRIGGER_EXIT_INTENT = 'Exit Intent'
TRIGGER_ELEMENT_CLICK = 'Element Click'
TRIGGER_INACTIVITY = 'Inactivity'
TRIGGER_CUSTOM_EVENT = 'Custom Event'
TRIGGER_FUNNEL = 'Funnel'

TRIGGER_TITLES: FrozenSet[str] = frozenset([
    TRIGGER_PAGE_VIEW,
    TRIGGER_TIME_SPENT,
    TRIGGER_SCROLL_DEPTH,
    TRIGGER_EXIT_INTENT,
    TRIGGER_ELEMENT_CLICK,
    TRIGGER_INACTIVITY,
    TRIGGER_CUSTOM_EVENT,
    TRIGGER_FUNNEL,
])

# Triggers armed as timers by the detector rather than matched directly
TIMED_TRIGGER_TITLES: FrozenSet[str] = frozenset([
    TRIGGER_TIME_SPENT,
    TRIGGER_INACTIVITY,
])

DEFAULT_INACTIVITY_SECONDS = 30

# =============================================================================
# CONDITION TITLES
# =============================================================================

CONDITION_URL_PATH = 'URL Path'
CONDITION_DEVICE_TYPE = 'Device Type'
CONDITION_BROWSER = 'Browser'
CONDITION_TRAFFIC_SOURCE = 'Traffic Source'
CONDITION_NEW_VS_RETURNING = 'New vs Returning'
CONDITION_AB_SPLIT = 'A/B Split'
CONDITION_BRANCH_SPLIT = 'Branch Split'
CONDITION_TIME_WINDOW = 'Time Window'
CONDITION_QUERY_PARAM = 'Query Param'
CONDITION_TAG = 'Tag'
CONDITION_JOIN = 'Join'
CONDITION_FREQUENCY_CAP = 'Frequency Cap'

CONDITION_TITLES: FrozenSet[str] = frozenset([
    CONDITION_URL_PATH,
    CONDITION_DEVICE_TYPE,
    CONDITION_BROWSER,
    CONDITION_TRAFFIC_SOURCE,
    CONDITION_NEW_VS_RETURNING,
    CONDITION_AB_SPLIT,
    CONDITION_BRANCH_SPLIT,
    CONDITION_TIME_WINDOW,
    CONDITION_QUERY_PARAM,
    CONDITION_TAG,
    CONDITION_JOIN,
    CONDITION_FREQUENCY_CAP,
])

# =============================================================================
# ACTION TITLES
# =============================================================================

ACTION_SHOW_MODAL = 'Show Modal'
ACTION_SHOW_BANNER = 'Show Banner'
ACTION_SHOW_NOTIFICATION = 'Show Notification'
ACTION_INSERT_SECTION = 'Insert Section'
ACTION_REDIRECT_URL = 'Redirect URL'
ACTION_TRACK_EVENT = 'Track Event'
ACTION_WAIT = 'Wait'

ACTION_SEND_EMAIL = 'Send Email'
ACTION_WEBHOOK = 'Webhook'
ACTION_ADD_TAG = 'Add Tag'
ACTION_REMOVE_TAG = 'Remove Tag'
ACTION_CUSTOM_CODE = 'Custom Code'

# Best-effort actions executed inline by the graph executor
LOCAL_ACTION_TITLES: FrozenSet[str] = frozenset([
    ACTION_SHOW_MODAL,
    ACTION_SHOW_BANNER,
    ACTION_SHOW_NOTIFICATION,
    ACTION_INSERT_SECTION,
    ACTION_REDIRECT_URL,
    ACTION_TRACK_EVENT,
    ACTION_WAIT,
])

# Authoritative actions enqueued for the execution worker
SERVER_ACTION_TITLES: FrozenSet[str] = frozenset([
    ACTION_SEND_EMAIL,
    ACTION_WEBHOOK,
    ACTION_ADD_TAG,
    ACTION_REMOVE_TAG,
    ACTION_CUSTOM_CODE,
])

# Server actions that go through the retry policy
RETRIED_ACTION_TITLES: FrozenSet[str] = frozenset([
    ACTION_SEND_EMAIL,
    ACTION_WEBHOOK,
])

ACTION_TITLES: FrozenSet[str] = LOCAL_ACTION_TITLES | SERVER_ACTION_TITLES

# =============================================================================
# FREQUENCY
# =============================================================================

FREQUENCY_EVERY_TRIGGER = 'every_trigger'
FREQUENCY_ONCE_PER_SESSION = 'once_per_session'
FREQUENCY_ONCE_EVER = 'once_ever'

DEFAULT_COOLDOWN_SECONDS = 24 * 60 * 60

# =============================================================================
# LIFECYCLE EVENT KINDS
# =============================================================================

EVENT_TRIGGER = 'Trigger'
EVENT_STEP_ENTERED = 'Step Entered'
EVENT_CONDITION_EVALUATED = 'Condition Evaluated'
EVENT_STEP_COMPLETED = 'Step Completed'
EVENT_ACTION_STARTED = 'Action Started'
EVENT_ACTION_EXECUTED = 'Action Executed'
EVENT_ACTION_FAILED = 'Action Failed'
EVENT_ACTION_SKIPPED = 'Action Skipped'
EVENT_STEP_FAILED = 'Step Failed'
EVENT_WORKFLOW_COMPLETED = 'Workflow Completed'

# Events that describe a visit to a node (funnel input)
STEP_EVENT_KINDS: FrozenSet[str] = frozenset([
    EVENT_TRIGGER,
    EVENT_STEP_ENTERED,
    EVENT_CONDITION_EVALUATED,
    EVENT_STEP_COMPLETED,
    EVENT_ACTION_STARTED,
    EVENT_ACTION_EXECUTED,
    EVENT_ACTION_FAILED,
    EVENT_ACTION_SKIPPED,
    EVENT_STEP_FAILED,
])

LIFECYCLE_EVENT_KINDS: FrozenSet[str] = STEP_EVENT_KINDS | frozenset([EVENT_WORKFLOW_COMPLETED])
