"""
Pydantic schemas for model output and for caller-supplied inputs.
"""
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class CandidateScore(BaseModel):
    """
    Pydantic schema for a scoring-call response
    """
    originality: int = Field(..., ge=0, le=10)
    relevance: int = Field(..., ge=0, le=10)
    reasoning: str = ""


class SynthesisDraft(BaseModel):
    """
    Pydantic schema for a development-call response
    """
    headline: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    historical_reference: str = ""
    core_thesis_alignment: str = ""

    @field_validator("headline", "content")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value.strip()


class PipelineOptions(BaseModel):
    """
    Bounds for one synthesis run. Phase 1 never processes more than these.
    """
    max_items_to_process: int = Field(20, ge=1, le=500)
    max_candidates_per_item: int = Field(5, ge=1, le=50)
    min_similarity: float = Field(0.65, ge=-1.0, le=1.0)
    max_age_days: int = Field(90, ge=1)


class QueueItemInput(BaseModel):
    """
    One item handed to the queue for enqueueing.
    """
    title: str = Field(..., min_length=1)
    source_daily_item_id: Optional[str] = None
    excerpt: Optional[str] = None
    content: Optional[str] = None
    source_email: Optional[str] = None
    source_url: Optional[str] = None
    # Repository source key, used when neither email nor URL identifies the source
    source_identifier: Optional[str] = None
    synthesis_score: float = Field(0.0, ge=0.0, le=10.0)
    relevance_score: float = Field(0.0, ge=0.0, le=10.0)
    uniqueness_score: float = Field(0.0, ge=0.0, le=10.0)


class ScoreUpdate(BaseModel):
    synthesis_score: Optional[float] = Field(None, ge=0.0, le=10.0)
    relevance_score: Optional[float] = Field(None, ge=0.0, le=10.0)
    uniqueness_score: Optional[float] = Field(None, ge=0.0, le=10.0)

    @model_validator(mode="after")
    def _at_least_one(self) -> "ScoreUpdate":
        if (
            self.synthesis_score is None
            and self.relevance_score is None
            and self.uniqueness_score is None
        ):
            raise ValueError("at least one score must be given")
        return self
