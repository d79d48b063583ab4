"""Pydantic models for workflow graphs and typed node settings.

Node settings arrive as arbitrary camelCase JSON keyed by the node title.
Each known title maps to a settings model through a discriminated union on
``title``; unknown titles fall back to ``BaseNodeSettings`` which keeps every
key and lets the node pass through.
"""

from typing import Literal, Union, Annotated, Optional, Dict, Any, List
from urllib.parse import urlparse
from pydantic import BaseModel, Field, PrivateAttr, TypeAdapter, ValidationError, field_validator, model_validator

from constants import (
    NODE_KIND_TRIGGER,
    NODE_KIND_CONDITION,
    NODE_KIND_ACTION,
    WORKFLOW_STATUS_DRAFT,
    WORKFLOW_STATUSES,
    CONDITION_TITLES,
    ACTION_TITLES,
    TRIGGER_TITLES,
    FREQUENCY_EVERY_TRIGGER,
    DEFAULT_INACTIVITY_SECONDS,
)
from core.logging import get_logger

logger = get_logger(__name__)

MatchMode = Literal["exact", "contains", "startsWith", "endsWith"]
Frequency = Literal["every_trigger", "once_per_session", "once_ever"]


# =============================================================================
# BASE MODELS
# =============================================================================

class BaseNodeSettings(BaseModel):
    """Base class for all node settings. Unknown keys are preserved."""
    model_config = {"extra": "allow", "populate_by_name": True}

    @model_validator(mode="before")
    @classmethod
    def drop_empty_values(cls, data):
        # Editors send null or "" for untouched fields; treat them as absent
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None and v != ""}
        return data


class LocalStorageMapping(BaseModel):
    """Copies one client localStorage value into the server action payload."""
    model_config = {"populate_by_name": True}

    local_storage_key: str = Field(alias="localStorageKey")
    payload_key: str = Field(alias="payloadKey")


class ActionSettings(BaseNodeSettings):
    """Settings shared by every action node."""
    frequency: Frequency = FREQUENCY_EVERY_TRIGGER
    local_storage_data: List[LocalStorageMapping] = Field(default_factory=list, alias="localStorageData")

    @field_validator("frequency", mode="before")
    @classmethod
    def default_frequency(cls, v):
        return v or FREQUENCY_EVERY_TRIGGER


# =============================================================================
# TRIGGER SETTINGS
# =============================================================================

class PageViewSettings(BaseNodeSettings):
    title: Literal["Page View"]
    url: Optional[str] = None
    url_match_type: MatchMode = Field(default="contains", alias="urlMatchType")


class TimeSpentSettings(BaseNodeSettings):
    title: Literal["Time Spent"]
    seconds: float = Field(default=0, ge=0)


class ScrollDepthSettings(BaseNodeSettings):
    title: Literal["Scroll Depth"]
    scroll_depth: float = Field(default=0, ge=0, le=100, alias="scrollDepth")


class ExitIntentSettings(BaseNodeSettings):
    title: Literal["Exit Intent"]


class ElementClickSettings(BaseNodeSettings):
    title: Literal["Element Click"]
    selector: Optional[str] = None


class InactivitySettings(BaseNodeSettings):
    title: Literal["Inactivity"]
    inactivity_seconds: float = Field(default=DEFAULT_INACTIVITY_SECONDS, gt=0, alias="inactivitySeconds")


class CustomEventSettings(BaseNodeSettings):
    title: Literal["Custom Event"]
    custom_event_name: Optional[str] = Field(default=None, alias="customEventName")


class FunnelTriggerSettings(BaseNodeSettings):
    """Fires on upstream funnel events (dropoff, conversion, abandonment...)."""
    title: Literal["Funnel"]
    funnel_id: Optional[str] = Field(default=None, alias="funnelId")
    event_type: Optional[str] = Field(default=None, alias="eventType")
    step_index: Optional[int] = Field(default=None, alias="stepIndex")
    time_threshold: Optional[float] = Field(default=None, alias="timeThreshold")  # minutes
    user_segment: Optional[str] = Field(default=None, alias="userSegment")
    min_value: Optional[float] = Field(default=None, alias="minValue")
    max_value: Optional[float] = Field(default=None, alias="maxValue")


# =============================================================================
# CONDITION SETTINGS
# =============================================================================

class UrlPathSettings(BaseNodeSettings):
    title: Literal["URL Path"]
    url: Optional[str] = None
    url_match_type: MatchMode = Field(default="contains", alias="urlMatchType")


class DeviceTypeSettings(BaseNodeSettings):
    title: Literal["Device Type"]
    device_type: Optional[str] = Field(default=None, alias="deviceType")


class BrowserSettings(BaseNodeSettings):
    title: Literal["Browser"]
    browser: Optional[str] = None


class TrafficSourceSettings(BaseNodeSettings):
    title: Literal["Traffic Source"]
    referrer_url: Optional[str] = Field(default=None, alias="referrerUrl")
    referrer_match_type: MatchMode = Field(default="contains", alias="referrerMatchType")


class NewVsReturningSettings(BaseNodeSettings):
    title: Literal["New vs Returning"]
    visitor_type: Optional[Literal["new", "returning"]] = Field(default=None, alias="visitorType")


class ABSplitSettings(BaseNodeSettings):
    title: Literal["A/B Split"]
    variant_a_percent: float = Field(default=50, ge=0, le=100, alias="variantAPercent")


class BranchSplitSettings(BaseNodeSettings):
    title: Literal["Branch Split"]
    variants_count: int = Field(default=2, ge=2, le=3, alias="variantsCount")
    variant_a_percent: float = Field(default=50, alias="variantAPercent")
    variant_b_percent: float = Field(default=50, alias="variantBPercent")
    variant_c_percent: float = Field(default=0, alias="variantCPercent")
    variant_a_label: Optional[str] = Field(default=None, alias="variantALabel")
    variant_b_label: Optional[str] = Field(default=None, alias="variantBLabel")
    variant_c_label: Optional[str] = Field(default=None, alias="variantCLabel")


class TimeWindowSettings(BaseNodeSettings):
    title: Literal["Time Window"]
    start_hour: int = Field(default=0, ge=0, le=23, alias="startHour")
    end_hour: int = Field(default=23, ge=0, le=23, alias="endHour")
    # 0 = Sunday ... 6 = Saturday
    days_of_week: Optional[List[int]] = Field(default=None, alias="daysOfWeek")


class QueryParamSettings(BaseNodeSettings):
    title: Literal["Query Param"]
    query_param: Optional[str] = Field(default=None, alias="queryParam")
    query_value: Optional[str] = Field(default=None, alias="queryValue")
    query_match_type: Literal["exists", "exact", "contains", "startsWith", "endsWith"] = Field(
        default="exists", alias="queryMatchType"
    )


class TagSettings(BaseNodeSettings):
    title: Literal["Tag"]
    tag_name: Optional[str] = Field(default=None, alias="tagName")


class JoinSettings(BaseNodeSettings):
    title: Literal["Join"]
    join_timeout_seconds: Optional[float] = Field(default=None, ge=0, alias="joinTimeoutSeconds")


class FrequencyCapSettings(BaseNodeSettings):
    title: Literal["Frequency Cap"]
    cooldown_seconds: Optional[int] = Field(default=None, ge=0, alias="cooldownSeconds")


# =============================================================================
# ACTION SETTINGS
# =============================================================================

class ShowModalSettings(ActionSettings):
    title: Literal["Show Modal"]
    modal_title: Optional[str] = Field(default=None, alias="modalTitle")
    modal_content: Optional[str] = Field(default=None, alias="modalContent")
    display_mode: str = Field(default="default", alias="displayMode")
    custom_html: Optional[str] = Field(default=None, alias="customHtml")


class ShowBannerSettings(ActionSettings):
    title: Literal["Show Banner"]
    banner_content: Optional[str] = Field(default=None, alias="bannerContent")
    banner_position: Literal["top", "bottom"] = Field(default="top", alias="bannerPosition")
    banner_cta_text: Optional[str] = Field(default=None, alias="bannerCtaText")
    banner_cta_url: Optional[str] = Field(default=None, alias="bannerCtaUrl")
    display_mode: str = Field(default="default", alias="displayMode")
    custom_html: Optional[str] = Field(default=None, alias="customHtml")


class ShowNotificationSettings(ActionSettings):
    title: Literal["Show Notification"]
    message: Optional[str] = None
    position: str = "top-right"
    type: Literal["info", "success", "warning", "error"] = "info"
    duration: int = Field(default=5000, ge=0)


class InsertSectionSettings(ActionSettings):
    title: Literal["Insert Section"]
    custom_html: Optional[str] = Field(default=None, alias="customHtml")
    selector: Optional[str] = None
    insert_position: Literal["before", "after", "prepend", "append"] = Field(default="after", alias="insertPosition")


class RedirectUrlSettings(ActionSettings):
    title: Literal["Redirect URL"]
    redirect_url: Optional[str] = Field(default=None, alias="redirectUrl")


class TrackEventSettings(ActionSettings):
    title: Literal["Track Event"]
    event_name: Optional[str] = Field(default=None, alias="eventName")
    event_data: Optional[Dict[str, Any]] = Field(default=None, alias="eventData")


class WaitSettings(ActionSettings):
    title: Literal["Wait"]
    wait_seconds: float = Field(default=0, ge=0, alias="waitSeconds")


class SendEmailSettings(ActionSettings):
    title: Literal["Send Email"]
    email_to: str = Field(alias="emailTo", min_length=3)
    email_subject: str = Field(default="", alias="emailSubject")
    email_body: str = Field(default="", alias="emailBody")

    @field_validator("email_to")
    @classmethod
    def validate_email_to(cls, v: str) -> str:
        # Placeholders such as {{user.email}} are resolved at send time
        if "@" not in v and "{{" not in v:
            raise ValueError("emailTo must be an email address or a template placeholder")
        return v


class WebhookSettings(ActionSettings):
    title: Literal["Webhook"]
    webhook_url: str = Field(alias="webhookUrl")
    webhook_method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = Field(default="POST", alias="webhookMethod")
    webhook_headers: Dict[str, str] = Field(default_factory=dict, alias="webhookHeaders")
    webhook_body: Optional[str] = Field(default=None, alias="webhookBody")

    @field_validator("webhook_method", mode="before")
    @classmethod
    def upper_method(cls, v):
        return v.upper() if isinstance(v, str) else v

    @field_validator("webhook_url")
    @classmethod
    def validate_webhook_url(cls, v: str) -> str:
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("webhookUrl must be an absolute http(s) URL")
        return v


class AddTagSettings(ActionSettings):
    title: Literal["Add Tag"]
    tag_name: str = Field(alias="tagName", min_length=1)


class RemoveTagSettings(ActionSettings):
    title: Literal["Remove Tag"]
    tag_name: str = Field(alias="tagName", min_length=1)


class CustomCodeSettings(ActionSettings):
    title: Literal["Custom Code"]
    custom_code: str = Field(default="", alias="customCode")


# =============================================================================
# DISCRIMINATED UNION
# =============================================================================

KnownNodeSettings = Annotated[
    Union[
        # Triggers
        PageViewSettings,
        TimeSpentSettings,
        ScrollDepthSettings,
        ExitIntentSettings,
        ElementClickSettings,
        InactivitySettings,
        CustomEventSettings,
        FunnelTriggerSettings,
        # Conditions
        UrlPathSettings,
        DeviceTypeSettings,
        BrowserSettings,
        TrafficSourceSettings,
        NewVsReturningSettings,
        ABSplitSettings,
        BranchSplitSettings,
        TimeWindowSettings,
        QueryParamSettings,
        TagSettings,
        JoinSettings,
        FrequencyCapSettings,
        # Actions
        ShowModalSettings,
        ShowBannerSettings,
        ShowNotificationSettings,
        InsertSectionSettings,
        RedirectUrlSettings,
        TrackEventSettings,
        WaitSettings,
        SendEmailSettings,
        WebhookSettings,
        AddTagSettings,
        RemoveTagSettings,
        CustomCodeSettings,
    ],
    Field(discriminator="title")
]

_known_settings_adapter = TypeAdapter(KnownNodeSettings)

KNOWN_TITLES = TRIGGER_TITLES | CONDITION_TITLES | ACTION_TITLES


def parse_settings(title: str, settings: Optional[Dict[str, Any]]) -> BaseNodeSettings:
    """Parse raw settings into the typed model for ``title``.

    Known titles raise pydantic ``ValidationError`` on bad settings. Unknown
    titles fall back to ``BaseNodeSettings`` with every key preserved.
    """
    data = {**(settings or {}), "title": title}
    if title in KNOWN_TITLES:
        return _known_settings_adapter.validate_python(data)
    logger.debug("Unknown node title, using permissive settings", title=title)
    return BaseNodeSettings(**data)


# =============================================================================
# GRAPH MODELS
# =============================================================================

class Node(BaseModel):
    """Workflow node. Accepts the editor shape ``{id, data: {title, type, settings}}``."""
    model_config = {"extra": "ignore", "populate_by_name": True}

    id: str = Field(min_length=1)
    kind: Literal["Trigger", "Condition", "Action"]
    title: str = Field(min_length=1)
    settings: Dict[str, Any] = Field(default_factory=dict)

    _typed_settings: Optional[BaseNodeSettings] = PrivateAttr(default=None)

    @model_validator(mode="before")
    @classmethod
    def flatten_editor_shape(cls, data):
        if isinstance(data, dict) and isinstance(data.get("data"), dict):
            inner = data["data"]
            data = {
                "id": data.get("id"),
                "kind": inner.get("type"),
                "title": inner.get("title"),
                "settings": inner.get("settings") or {},
            }
        if isinstance(data, dict) and isinstance(data.get("kind"), str):
            data = {**data, "kind": data["kind"].capitalize()}
        return data

    @property
    def typed_settings(self) -> BaseNodeSettings:
        if self._typed_settings is None:
            self._typed_settings = parse_settings(self.title, self.settings)
        return self._typed_settings

    @property
    def is_trigger(self) -> bool:
        return self.kind == NODE_KIND_TRIGGER

    @property
    def is_condition(self) -> bool:
        return self.kind == NODE_KIND_CONDITION

    @property
    def is_action(self) -> bool:
        return self.kind == NODE_KIND_ACTION

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "kind": self.kind, "title": self.title, "settings": self.settings}


class Edge(BaseModel):
    """Directed edge between two nodes. Branch Split edges may carry a label."""
    model_config = {"extra": "ignore"}

    id: Optional[str] = None
    source: str
    target: str
    label: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def lift_editor_label(cls, data):
        # Editor edges keep the branch label under data.label
        if isinstance(data, dict) and not data.get("label") and isinstance(data.get("data"), dict):
            label = data["data"].get("label")
            if label:
                data = {**data, "label": label}
        return data

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "source": self.source, "target": self.target, "label": self.label}


class Workflow(BaseModel):
    """A site's workflow graph."""
    model_config = {"extra": "ignore", "populate_by_name": True}

    id: str = Field(min_length=1)
    site_id: str = Field(alias="siteId", min_length=1)
    name: str = Field(min_length=1)
    status: str = WORKFLOW_STATUS_DRAFT
    nodes: List[Node] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        if v not in WORKFLOW_STATUSES:
            raise ValueError(f"status must be one of {sorted(WORKFLOW_STATUSES)}")
        return v

    @model_validator(mode="after")
    def validate_graph(self):
        ids = [node.id for node in self.nodes]
        duplicates = {i for i in ids if ids.count(i) > 1}
        if duplicates:
            raise ValueError(f"duplicate node ids: {sorted(duplicates)}")
        known = set(ids)
        for edge in self.edges:
            if edge.source not in known or edge.target not in known:
                raise ValueError(f"edge {edge.id or ''} references unknown node ({edge.source} -> {edge.target})")
        for node in self.nodes:
            try:
                node.typed_settings
            except ValidationError as e:
                details = "; ".join(err["msg"] for err in e.errors())
                raise ValueError(f"node {node.id} ({node.title}) has invalid settings: {details}")
        return self

    def get_node(self, node_id: str) -> Optional[Node]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    @property
    def triggers(self) -> List[Node]:
        return [node for node in self.nodes if node.is_trigger]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "siteId": self.site_id,
            "name": self.name,
            "status": self.status,
            "nodes": [node.to_dict() for node in self.nodes],
            "edges": [edge.to_dict() for edge in self.edges],
        }

