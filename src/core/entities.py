from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class SynthesisType(str, Enum):
    EVOLUTION = "evolution"
    VALIDATION = "validation"
    CONTRAST = "contrast"
    PATTERN = "pattern"
    CROSS_DOMAIN = "cross_domain"


class QueueStatus(str, Enum):
    PENDING = "pending"
    SELECTED = "selected"
    USED = "used"
    EXPIRED = "expired"
    SKIPPED = "skipped"


class RunState(str, Enum):
    DISCOVERING = "discovering"
    SCORING = "scoring"
    DEVELOPING = "developing"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(frozen=True)
class Item:
    """
    A dated text item from the source repository (newsletter or article).
    """
    id: str
    title: str
    content: str
    source_identifier: str
    collected_at: datetime
    newsletter_date: date
    embedding: Optional[List[float]] = None
    source_url: Optional[str] = None

    @property
    def has_content(self) -> bool:
        return bool(self.content and self.content.strip())


@dataclass(frozen=True)
class Digest:
    """
    Anchor for one day's items and the candidates/syntheses derived from them.
    """
    id: str
    digest_date: date
    sources_used: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class SimilarItem:
    """
    A historical neighbour returned by the similarity index.
    """
    item: Item
    similarity: float


@dataclass(frozen=True)
class SynthesisCandidate:
    """
    A scored (source, related) item pair proposed as a cross-temporal connection.
    """
    digest_id: str
    source_item_id: str
    related_item_id: str
    similarity: float
    synthesis_type: SynthesisType
    originality_score: int
    relevance_score: int
    reasoning: str
    days_ago: int = 0
    id: Optional[int] = None
    created_at: Optional[datetime] = None

    @property
    def total_score(self) -> int:
        return self.originality_score + self.relevance_score


@dataclass(frozen=True)
class DevelopmentContext:
    """
    A candidate together with the full text of both items, as required by Phase 2.
    """
    candidate: SynthesisCandidate
    source_item: Item
    related_item: Item


@dataclass(frozen=True)
class DevelopedSynthesis:
    """
    Narrative text expanded from a single candidate.
    """
    digest_id: str
    candidate_id: int
    headline: str
    content: str
    historical_reference: str
    core_thesis_alignment: str
    thesis_alignment_score: int = 0
    id: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class QueueItem:
    """
    A scored, dated unit eligible for selection into an article.
    """
    id: int
    title: str
    source_identifier: str
    status: QueueStatus
    queued_at: datetime
    expires_at: datetime
    source_daily_item_id: Optional[str] = None
    excerpt: Optional[str] = None
    content: Optional[str] = None
    source_display_name: Optional[str] = None
    source_url: Optional[str] = None
    synthesis_score: float = 0.0
    relevance_score: float = 0.0
    uniqueness_score: float = 0.0
    source_bonus: float = 0.0
    total_score: float = 0.0
    selected_at: Optional[datetime] = None
    used_in_post_id: Optional[str] = None
    skip_reason: Optional[str] = None


@dataclass(frozen=True)
class SelectableQueueItem(QueueItem):
    source_committed_count: int = 0
    within_source_limit: bool = True


@dataclass(frozen=True)
class SourceDistribution:
    source_identifier: str
    source_display_name: Optional[str]
    item_count: int
    pending_count: int
    selected_count: int
    used_count: int
    pct_of_total: float


@dataclass(frozen=True)
class ProgressEvent:
    """
    One step of a pipeline run, consumed by whatever transport streams it.
    type is "progress", "complete" or "error".
    """
    type: str
    phase: str
    current: int = 0
    total: int = 0
    label: str = ""
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "type": self.type,
            "phase": self.phase,
            "current": self.current,
            "total": self.total,
            "label": self.label,
        }
        if self.data:
            payload.update(self.data)
        return payload


@dataclass
class PipelineResult:
    digest_id: str
    state: RunState = RunState.DISCOVERING
    items_processed: int = 0
    candidates_created: int = 0
    syntheses_developed: int = 0
    skipped_existing: int = 0
    errors: int = 0
    error_messages: List[str] = field(default_factory=list)
    stopped_early: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "digest_id": self.digest_id,
            "state": self.state.value,
            "items_processed": self.items_processed,
            "candidates_created": self.candidates_created,
            "syntheses_developed": self.syntheses_developed,
            "skipped_existing": self.skipped_existing,
            "errors": self.errors,
            "error_messages": self.error_messages,
            "stopped_early": self.stopped_early,
        }


@dataclass(frozen=True)
class BackfillResult:
    processed: int
    errors: int
    remaining: int
    skipped: int = 0


@dataclass
class EnqueueResult:
    inserted: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)
