"""
Analysis Domain Models
Structured AI assessment of a single message, the user context fed into the
prompt, and the request/response envelopes used by the analysis engine.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from inbox_triage.models.domain.message_domain import NormalizedMessage


class PriorityLevel(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class SentimentType(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"
    MIXED = "mixed"


class UrgencyLevel(str, Enum):
    IMMEDIATE = "immediate"
    TODAY = "today"
    THIS_WEEK = "this_week"
    WHEN_CONVENIENT = "when_convenient"


FALLBACK_MODEL = "fallback"


def clamp_score(value: Any, default: float = 0.5) -> float:
    """Coerce to a float in [0, 1]; non-numeric input yields the default."""
    if isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number != number:  # NaN
        return default
    return max(0.0, min(1.0, number))


@dataclass(slots=True)
class PriorityAssessment:
    level: PriorityLevel
    score: float
    reasoning: str


@dataclass(slots=True)
class SentimentAssessment:
    type: SentimentType
    score: float
    reasoning: str


@dataclass(slots=True)
class UrgencyAssessment:
    level: UrgencyLevel
    score: float
    reasoning: str


@dataclass(slots=True)
class AnalysisResult:
    """Analysis of one message. Bounded scores are always within [0, 1]."""

    message_id: str
    summary: str
    priority: PriorityAssessment
    sentiment: SentimentAssessment
    urgency: UrgencyAssessment
    action_required: bool = False
    suggested_actions: list[str] = field(default_factory=list)
    key_topics: list[str] = field(default_factory=list)
    vip_contact: bool = False
    vip_score: float = 0.0
    confidence: float = 0.7
    priority_score: float = 0.5
    processing_time_ms: int = 0
    model_used: str = FALLBACK_MODEL
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self):
        self.priority.score = clamp_score(self.priority.score)
        self.sentiment.score = clamp_score(self.sentiment.score)
        self.urgency.score = clamp_score(self.urgency.score)
        self.vip_score = clamp_score(self.vip_score, default=0.0)
        self.confidence = clamp_score(self.confidence, default=0.7)
        self.priority_score = clamp_score(self.priority_score)

    @property
    def is_fallback(self) -> bool:
        return self.model_used == FALLBACK_MODEL

    @classmethod
    def fallback(cls, message: NormalizedMessage) -> AnalysisResult:
        """Neutral analysis used whenever the model call cannot produce one."""
        return cls(
            message_id=message.id,
            summary=generate_basic_summary(message),
            priority=PriorityAssessment(
                PriorityLevel.MEDIUM, 0.5, "Fallback analysis - unable to determine priority"
            ),
            sentiment=SentimentAssessment(
                SentimentType.NEUTRAL, 0.5, "Fallback analysis - unable to determine sentiment"
            ),
            urgency=UrgencyAssessment(
                UrgencyLevel.WHEN_CONVENIENT, 0.5, "Fallback analysis - unable to determine urgency"
            ),
            action_required=False,
            vip_contact=False,
            vip_score=0.0,
            confidence=0.3,
            priority_score=0.5,
            model_used=FALLBACK_MODEL,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "message_id": self.message_id,
            "summary": self.summary,
            "priority": {
                "level": self.priority.level.value,
                "score": self.priority.score,
                "reasoning": self.priority.reasoning,
            },
            "sentiment": {
                "type": self.sentiment.type.value,
                "score": self.sentiment.score,
                "reasoning": self.sentiment.reasoning,
            },
            "urgency": {
                "level": self.urgency.level.value,
                "score": self.urgency.score,
                "reasoning": self.urgency.reasoning,
            },
            "action_required": self.action_required,
            "suggested_actions": list(self.suggested_actions),
            "key_topics": list(self.key_topics),
            "vip_contact": self.vip_contact,
            "vip_score": self.vip_score,
            "confidence": self.confidence,
            "priority_score": self.priority_score,
            "processing_time_ms": self.processing_time_ms,
            "model_used": self.model_used,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AnalysisResult:
        priority = data.get("priority") or {}
        sentiment = data.get("sentiment") or {}
        urgency = data.get("urgency") or {}
        created_at = data.get("created_at")
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at)
        return cls(
            message_id=data["message_id"],
            summary=data.get("summary", ""),
            priority=PriorityAssessment(
                PriorityLevel(priority.get("level", "medium")),
                priority.get("score", 0.5),
                priority.get("reasoning", ""),
            ),
            sentiment=SentimentAssessment(
                SentimentType(sentiment.get("type", "neutral")),
                sentiment.get("score", 0.5),
                sentiment.get("reasoning", ""),
            ),
            urgency=UrgencyAssessment(
                UrgencyLevel(urgency.get("level", "when_convenient")),
                urgency.get("score", 0.5),
                urgency.get("reasoning", ""),
            ),
            action_required=bool(data.get("action_required", False)),
            suggested_actions=list(data.get("suggested_actions") or []),
            key_topics=list(data.get("key_topics") or []),
            vip_contact=bool(data.get("vip_contact", False)),
            vip_score=data.get("vip_score", 0.0),
            confidence=data.get("confidence", 0.7),
            priority_score=data.get("priority_score", 0.5),
            processing_time_ms=int(data.get("processing_time_ms", 0)),
            model_used=data.get("model_used", FALLBACK_MODEL),
            created_at=created_at or datetime.now(UTC),
        )


@dataclass(slots=True)
class UserContext:
    role: str = "Professional"
    industry: str = "General"
    preferences: list[str] = field(default_factory=list)
    vip_contacts: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "industry": self.industry,
            "preferences": list(self.preferences),
            "vip_contacts": list(self.vip_contacts),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> UserContext:
        data = data or {}
        return cls(
            role=data.get("role") or "Professional",
            industry=data.get("industry") or "General",
            preferences=list(data.get("preferences") or []),
            vip_contacts=list(data.get("vip_contacts") or []),
        )


@dataclass(slots=True)
class AnalysisRequest:
    message: NormalizedMessage
    user_id: str
    user_context: UserContext | None = None
    batch_id: str | None = None


@dataclass(slots=True)
class AnalysisResponse:
    analysis: AnalysisResult
    success: bool
    error: str | None = None
    retryable: bool = False


@dataclass(slots=True)
class MessageSummary:
    message_id: str
    summary: str
    confidence: float
    key_points: list[str] = field(default_factory=list)
    is_fallback: bool = False
    model_used: str = FALLBACK_MODEL

    def to_dict(self) -> dict[str, Any]:
        return {
            "message_id": self.message_id,
            "summary": self.summary,
            "confidence": self.confidence,
            "key_points": list(self.key_points),
            "is_fallback": self.is_fallback,
            "model_used": self.model_used,
        }

    @classmethod
    def fallback(cls, message: NormalizedMessage) -> MessageSummary:
        return cls(
            message_id=message.id,
            summary=generate_basic_summary(message),
            confidence=0.5,
            is_fallback=True,
        )


def calculate_summary_confidence(message: NormalizedMessage, summary: str) -> float:
    """
    Heuristic confidence for a model summary.

    Starts at 0.7; long bodies and a medium-length summary raise it, very
    short bodies lower it. Capped at 1.0.
    """
    body_length = len(message.preferred_body())
    confidence = 0.7
    if body_length > 1000:
        confidence += 0.1
    if body_length < 100:
        confidence -= 0.1
    if 50 < len(summary) < 200:
        confidence += 0.1
    if "urgent" in summary or "important" in summary:
        confidence += 0.05
    if len(message.subject) > 10:
        confidence += 0.05
    return round(min(confidence, 1.0), 4)


def generate_basic_summary(message: NormalizedMessage) -> str:
    """One-line summary built from sender, subject and the first 20 words of the body."""
    sender = message.sender.name or message.sender.address
    words = message.preferred_body().split()
    return f'Email from {sender} regarding "{message.subject}". {" ".join(words[:20])}...'
