"""Condition node evaluation and Branch Split edge selection.

Each Condition node title has its own predicate over the visitor environment
(URL, referrer, user agent, query string, local time, tags). Defaults matter:
a URL Path without a url passes, while Device Type, Browser, New vs Returning
and Query Param fail when their setting is absent. Unknown titles pass.

Branch Split is always true as a predicate; the branch is chosen later by
``select_branch_edge`` when outgoing edges are resolved.
"""

import random
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import parse_qs, urlparse

from constants import (
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
)
from core.logging import get_logger
from models.nodes import BranchSplitSettings, Edge, Node

logger = get_logger(__name__)

MOBILE_PATTERN = re.compile(r"Mobi|Android", re.IGNORECASE)

# Async callable (site_id, visitor_id, tag) -> bool
TagLookup = Callable[[str, str, str], Awaitable[bool]]


@dataclass
class VisitorEnvironment:
    """What the page-side integration knows about the visitor right now."""
    url: str = ""
    referrer: str = ""
    user_agent: str = ""
    is_returning: bool = False
    now: Optional[datetime] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def path(self) -> str:
        parsed = urlparse(self.url)
        if parsed.scheme or parsed.netloc:
            return parsed.path or "/"
        return self.url.split("?", 1)[0].split("#", 1)[0]

    @property
    def query_params(self) -> Dict[str, str]:
        query = urlparse(self.url).query
        # First value wins, blank values kept so "exists" sees ?flag=
        return {k: v[0] for k, v in parse_qs(query, keep_blank_values=True).items()}

    @property
    def device_type(self) -> str:
        return "Mobile" if MOBILE_PATTERN.search(self.user_agent or "") else "Desktop"

    @property
    def browser(self) -> str:
        return detect_browser(self.user_agent)

    def current_time(self) -> datetime:
        return self.now or datetime.now()

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "VisitorEnvironment":
        data = data or {}
        now = data.get("now")
        if isinstance(now, str):
            now = datetime.fromisoformat(now)
        return cls(
            url=data.get("url") or "",
            referrer=data.get("referrer") or "",
            user_agent=data.get("userAgent") or data.get("user_agent") or "",
            is_returning=bool(data.get("isReturning", data.get("is_returning", False))),
            now=now,
            extra={k: v for k, v in data.items()
                   if k not in ("url", "referrer", "userAgent", "user_agent", "isReturning", "is_returning", "now")},
        )


def detect_browser(user_agent: str) -> str:
    """Browser family from a user agent string.

    Edge and Opera are checked before Chrome because their user agents also
    contain "Chrome".
    """
    ua = user_agent or ""
    if "Edg" in ua:
        return "edge"
    if "OPR/" in ua or "Opera" in ua:
        return "opera"
    if "Chrome" in ua:
        return "chrome"
    if "Firefox" in ua:
        return "firefox"
    if "Safari" in ua:
        return "safari"
    return "other"


def match_text(value: str, target: str, mode: str) -> bool:
    """Match ``value`` against ``target`` using exact/contains/startsWith/endsWith."""
    if mode == "exact":
        return value == target
    if mode == "startsWith":
        return value.startswith(target)
    if mode == "endsWith":
        return value.endswith(target)
    return target in value


class ConditionEvaluator:
    """Evaluates Condition nodes for one visitor.

    Args:
        tag_lookup: Remote tag lookup, required for Tag conditions
        cache: Optional CacheService used as the session tag cache
        tag_cache_ttl: Seconds a tag lookup result stays cached
        rng: Random source for A/B Split draws
    """

    def __init__(self, tag_lookup: Optional[TagLookup] = None, cache=None,
                 tag_cache_ttl: int = 300, rng: Optional[random.Random] = None):
        self.tag_lookup = tag_lookup
        self.cache = cache
        self.tag_cache_ttl = tag_cache_ttl
        self.rng = rng or random.Random()

    async def evaluate(self, node: Node, env: VisitorEnvironment,
                       site_id: str = "", visitor_id: str = "") -> bool:
        """Evaluate a condition node. Errors are logged and count as false."""
        try:
            return await self._evaluate(node, env, site_id, visitor_id)
        except Exception as e:
            logger.warning("Condition evaluation error", node_id=node.id, title=node.title, error=str(e))
            return False

    async def _evaluate(self, node: Node, env: VisitorEnvironment, site_id: str, visitor_id: str) -> bool:
        title = node.title
        settings = node.typed_settings

        if title == CONDITION_URL_PATH:
            if not settings.url:
                return True
            mode = settings.url_match_type
            if mode == "exact":
                return env.url == settings.url or env.path == settings.url
            if mode in ("startsWith", "endsWith"):
                return match_text(env.path, settings.url, mode)
            return settings.url in env.url

        elif title == CONDITION_DEVICE_TYPE:
            if not settings.device_type:
                return False
            if settings.device_type.lower() == "any":
                return True
            return env.device_type.lower() == settings.device_type.lower()

        elif title == CONDITION_BROWSER:
            if not settings.browser:
                return False
            return env.browser == settings.browser.lower()

        elif title == CONDITION_TRAFFIC_SOURCE:
            if not settings.referrer_url:
                # Direct traffic only
                return not env.referrer
            if not env.referrer:
                return False
            return match_text(env.referrer, settings.referrer_url, settings.referrer_match_type)

        elif title == CONDITION_NEW_VS_RETURNING:
            if not settings.visitor_type:
                return False
            return settings.visitor_type == ("returning" if env.is_returning else "new")

        elif title == CONDITION_AB_SPLIT:
            return self.rng.random() * 100 < settings.variant_a_percent

        elif title == CONDITION_TIME_WINDOW:
            return self._in_time_window(settings, env.current_time())

        elif title == CONDITION_QUERY_PARAM:
            if not settings.query_param:
                return False
            params = env.query_params
            mode = settings.query_match_type
            if mode == "exists":
                return settings.query_param in params
            value = params.get(settings.query_param)
            if value is None:
                return False
            return match_text(value, settings.query_value or "", mode)

        elif title == CONDITION_TAG:
            if not settings.tag_name:
                return False
            return await self._has_tag(site_id, visitor_id, settings.tag_name)

        elif title in (CONDITION_BRANCH_SPLIT, CONDITION_JOIN, CONDITION_FREQUENCY_CAP):
            return True

        logger.info("Unknown condition type, passing through", node_id=node.id, title=title)
        return True

    @staticmethod
    def _in_time_window(settings, now: datetime) -> bool:
        hour = now.hour
        start, end = settings.start_hour, settings.end_hour
        if start <= end:
            hour_ok = start <= hour <= end
        else:
            hour_ok = hour >= start or hour <= end
        days = settings.days_of_week
        if days:
            # 0 = Sunday
            return hour_ok and (now.weekday() + 1) % 7 in days
        return hour_ok

    async def _has_tag(self, site_id: str, visitor_id: str, tag: str) -> bool:
        if self.tag_lookup is None:
            logger.warning("Tag condition without tag lookup", tag=tag)
            return False

        cache_key = f"tagcache:{site_id}:{visitor_id}:{tag}"
        if self.cache is not None:
            cached = await self.cache.get(cache_key)
            if cached is not None:
                return bool(cached)

        has_tag = bool(await self.tag_lookup(site_id, visitor_id, tag))
        if self.cache is not None:
            await self.cache.set(cache_key, has_tag, ttl=self.tag_cache_ttl)
        return has_tag


# =============================================================================
# BRANCH SPLIT
# =============================================================================

def branch_weights(settings: BranchSplitSettings) -> List[float]:
    """Variant weights A/B[/C], each clamped to 0..100."""
    weights = [settings.variant_a_percent, settings.variant_b_percent]
    if settings.variants_count == 3:
        weights.append(settings.variant_c_percent)
    return [min(100.0, max(0.0, float(w))) for w in weights]


def pick_variant(weights: List[float], rng: random.Random) -> int:
    """Index of the first variant whose cumulative boundary exceeds the draw.

    When no boundary exceeds it (all weights zero) the first variant wins.
    """
    total = max(1.0, sum(weights))
    draw = rng.random() * total
    cumulative = 0.0
    for index, weight in enumerate(weights):
        cumulative += weight
        if draw < cumulative:
            return index
    return 0


def select_branch_edge(node: Node, edges: List[Edge], rng: random.Random) -> Optional[Edge]:
    """Pick exactly one outgoing edge of a Branch Split node.

    The drawn variant resolves to the edge labelled a/b/c (or the variant's
    configured label), case-insensitively, else to the edge at the same
    position, clamped to the last edge.
    """
    if not edges:
        return None

    settings = node.typed_settings
    index = pick_variant(branch_weights(settings), rng)
    letter = "abc"[index]
    custom_label = [settings.variant_a_label, settings.variant_b_label, settings.variant_c_label][index]
    wanted = {letter}
    if custom_label:
        wanted.add(custom_label.strip().lower())

    for edge in edges:
        if edge.label and edge.label.strip().lower() in wanted:
            return edge

    return edges[min(index, len(edges) - 1)]
