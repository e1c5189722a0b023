"""Engagement scoring rules and behaviour detectors."""
from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Dict, Optional

KEY_PAGE_KEYWORDS = ("pricing", "contact", "book", "demo", "thank-you", "checkout", "schedule")
CTA_KEYWORDS = ("contact", "pricing", "book", "schedule", "demo", "apply", "lead", "call", "button", "cta")
EXIT_INTENT_KEYWORDS = ("exit", "intent", "leave")
VIDEO_KEYWORDS = ("video", "play", "watch")

HIGH_ATTENTION_MS = 60_000
DEEP_SCROLL_PCT = 50
MAX_SCORE = 15


class EngagementSegment(str, Enum):
    CASUAL = "Casual"
    RESEARCHER = "Researcher"
    HIGH_INTENT = "HighIntent"
    ACTION = "Action"


@dataclass(frozen=True)
class VisitorFlags:
    is_repeat_visitor: bool = False
    high_attention: bool = False
    visited_key_page: bool = False
    cta_clicked: bool = False
    exit_intent_triggered: bool = False
    video_engaged: bool = False

    def as_dict(self) -> Dict[str, bool]:
        return asdict(self)


@dataclass(frozen=True)
class ScoringInput:
    visits_count: int = 0
    total_time_on_page_ms: float = 0
    max_scroll_percentage: float = 0
    visited_key_page: bool = False
    cta_clicked: bool = False
    exit_intent_triggered: bool = False
    video_engaged: bool = False


def calculate_engagement_score(features: ScoringInput) -> int:
    """Additive engagement score.

    +2 repeat visits, +2 at least 60s on page, +1 scrolled at least half way,
    +2 key page, +3 CTA click, +3 exit intent, +2 video engagement.
    """
    score = 0
    if features.visits_count >= 2:
        score += 2
    if features.total_time_on_page_ms >= HIGH_ATTENTION_MS:
        score += 2
    if features.max_scroll_percentage >= DEEP_SCROLL_PCT:
        score += 1
    if features.visited_key_page:
        score += 2
    if features.cta_clicked:
        score += 3
    if features.exit_intent_triggered:
        score += 3
    if features.video_engaged:
        score += 2
    return score


def get_engagement_segment(score: int) -> EngagementSegment:
    if score >= 9:
        return EngagementSegment.ACTION
    if score >= 6:
        return EngagementSegment.HIGH_INTENT
    if score >= 3:
        return EngagementSegment.RESEARCHER
    return EngagementSegment.CASUAL


def _contains_any(text: Optional[str], keywords) -> bool:
    if not text:
        return False
    lowered = text.lower()
    return any(keyword in lowered for keyword in keywords)


def is_key_page(url: Optional[str]) -> bool:
    return _contains_any(url, KEY_PAGE_KEYWORDS)


def is_cta_click(element_identifier: Optional[str], url: Optional[str]) -> bool:
    """A click on a call-to-action element, or on any element of a CTA page.

    Only events that carry an element identifier are clicks; a plain page view
    of /pricing is a key-page visit, not a CTA click.
    """
    if not element_identifier:
        return False
    return _contains_any(element_identifier, CTA_KEYWORDS) or _contains_any(url, CTA_KEYWORDS)


def is_exit_intent(event_type: Optional[str]) -> bool:
    return _contains_any(event_type, EXIT_INTENT_KEYWORDS)


def is_video_engaged(event_type: Optional[str]) -> bool:
    return _contains_any(event_type, VIDEO_KEYWORDS)


def is_page_view(event_type: Optional[str]) -> bool:
    lowered = (event_type or "").lower()
    return "page_view" in lowered or "pageview" in lowered or lowered == "view"
