"""
Model output decoding.

The raw completion is parsed as JSON and validated against a lenient
pydantic schema that coerces every field to a safe value: unknown enum
values fall back to medium / neutral / when_convenient, scores are clamped
to [0, 1], absent lists become empty. Only output that is not a JSON object
at all is reported as an error.
"""

import json
from dataclasses import dataclass
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from inbox_triage.infrastructure.observability.logging import get_logger
from inbox_triage.models.domain.analysis_domain import (
    AnalysisResult,
    PriorityAssessment,
    PriorityLevel,
    SentimentAssessment,
    SentimentType,
    UrgencyAssessment,
    UrgencyLevel,
    clamp_score,
    generate_basic_summary,
)
from inbox_triage.models.domain.message_domain import NormalizedMessage

logger = get_logger(__name__)

NO_REASONING = "No reasoning provided"


def _coerce_enum(value: Any, enum_cls, default):
    if isinstance(value, str):
        try:
            return enum_cls(value.strip().lower())
        except ValueError:
            return default
    return default


def _coerce_reasoning(value: Any) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return NO_REASONING


def _coerce_str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if item is not None and str(item).strip()]


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1")
    if isinstance(value, (int, float)):
        return value != 0
    return False


class PriorityPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    level: PriorityLevel = PriorityLevel.MEDIUM
    score: float = 0.5
    reasoning: str = NO_REASONING

    @field_validator("level", mode="before")
    @classmethod
    def _level(cls, v):
        return _coerce_enum(v, PriorityLevel, PriorityLevel.MEDIUM)

    @field_validator("score", mode="before")
    @classmethod
    def _score(cls, v):
        return clamp_score(v)

    @field_validator("reasoning", mode="before")
    @classmethod
    def _reasoning(cls, v):
        return _coerce_reasoning(v)


class SentimentPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: SentimentType = SentimentType.NEUTRAL
    score: float = 0.5
    reasoning: str = NO_REASONING

    @field_validator("type", mode="before")
    @classmethod
    def _type(cls, v):
        return _coerce_enum(v, SentimentType, SentimentType.NEUTRAL)

    @field_validator("score", mode="before")
    @classmethod
    def _score(cls, v):
        return clamp_score(v)

    @field_validator("reasoning", mode="before")
    @classmethod
    def _reasoning(cls, v):
        return _coerce_reasoning(v)


class UrgencyPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    level: UrgencyLevel = UrgencyLevel.WHEN_CONVENIENT
    score: float = 0.5
    reasoning: str = NO_REASONING

    @field_validator("level", mode="before")
    @classmethod
    def _level(cls, v):
        return _coerce_enum(v, UrgencyLevel, UrgencyLevel.WHEN_CONVENIENT)

    @field_validator("score", mode="before")
    @classmethod
    def _score(cls, v):
        return clamp_score(v)

    @field_validator("reasoning", mode="before")
    @classmethod
    def _reasoning(cls, v):
        return _coerce_reasoning(v)


class AnalysisPayload(BaseModel):
    """Schema of the model's JSON answer. Accepts camelCase or snake_case keys."""

    model_config = ConfigDict(extra="ignore")

    summary: str | None = None
    priority: PriorityPayload = Field(default_factory=PriorityPayload)
    sentiment: SentimentPayload = Field(default_factory=SentimentPayload)
    urgency: UrgencyPayload = Field(default_factory=UrgencyPayload)
    action_required: bool = Field(
        default=False, validation_alias=AliasChoices("actionRequired", "action_required")
    )
    suggested_actions: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("suggestedActions", "suggested_actions")
    )
    key_topics: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("keyTopics", "key_topics")
    )
    vip_contact: bool = Field(
        default=False, validation_alias=AliasChoices("vipContact", "vip_contact")
    )
    vip_score: float = Field(default=0.0, validation_alias=AliasChoices("vipScore", "vip_score"))
    confidence: float = 0.7

    @field_validator("summary", mode="before")
    @classmethod
    def _summary(cls, v):
        return v.strip() if isinstance(v, str) and v.strip() else None

    @field_validator("priority", "sentiment", "urgency", mode="before")
    @classmethod
    def _assessment(cls, v):
        return v if isinstance(v, dict) else {}

    @field_validator("action_required", "vip_contact", mode="before")
    @classmethod
    def _flags(cls, v):
        return _coerce_bool(v)

    @field_validator("suggested_actions", "key_topics", mode="before")
    @classmethod
    def _lists(cls, v):
        return _coerce_str_list(v)

    @field_validator("vip_score", mode="before")
    @classmethod
    def _vip_score(cls, v):
        return clamp_score(v, default=0.0)

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence(cls, v):
        return clamp_score(v, default=0.7)


@dataclass(slots=True)
class DecodeResult:
    analysis: AnalysisResult | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.analysis is not None


def decode_analysis(raw: str, message: NormalizedMessage) -> DecodeResult:
    """Validate raw model output into an AnalysisResult for ``message``."""
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        logger.warning(
            "Model returned invalid JSON", message_id=message.id, raw_preview=(raw or "")[:200]
        )
        return DecodeResult(error=f"Model returned invalid JSON: {e}")

    if not isinstance(data, dict):
        return DecodeResult(error=f"Model returned {type(data).__name__}, expected object")

    try:
        payload = AnalysisPayload.model_validate(data)
    except ValidationError as e:
        logger.warning("Model output failed validation", message_id=message.id, error=str(e))
        return DecodeResult(error=f"Model output failed validation: {e.error_count()} errors")

    analysis = AnalysisResult(
        message_id=message.id,
        summary=payload.summary or generate_basic_summary(message),
        priority=PriorityAssessment(
            payload.priority.level, payload.priority.score, payload.priority.reasoning
        ),
        sentiment=SentimentAssessment(
            payload.sentiment.type, payload.sentiment.score, payload.sentiment.reasoning
        ),
        urgency=UrgencyAssessment(
            payload.urgency.level, payload.urgency.score, payload.urgency.reasoning
        ),
        action_required=payload.action_required,
        suggested_actions=payload.suggested_actions,
        key_topics=payload.key_topics,
        vip_contact=payload.vip_contact,
        vip_score=payload.vip_score,
        confidence=payload.confidence,
    )
    return DecodeResult(analysis=analysis)


class SummaryPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    summary: str | None = None
    key_points: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("keyPoints", "key_points")
    )

    @field_validator("summary", mode="before")
    @classmethod
    def _summary(cls, v):
        return v.strip() if isinstance(v, str) and v.strip() else None

    @field_validator("key_points", mode="before")
    @classmethod
    def _key_points(cls, v):
        return _coerce_str_list(v)[:5]


def decode_summary(raw: str, message: NormalizedMessage) -> SummaryPayload | None:
    """Summary and key points from raw model output; None when there is no usable summary."""
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning(
            "Model returned invalid summary JSON", message_id=message.id, raw_preview=(raw or "")[:200]
        )
        return None
    if not isinstance(data, dict):
        return None

    payload = SummaryPayload.model_validate(data)
    return payload if payload.summary else None
