"""Shared data models for the civic extraction pipeline."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Generic, List, NamedTuple, Optional, Tuple, TypeVar, Union

from .errors import ExtractionError, FieldValidationError
from .rules import ExtractionRuleSet

T = TypeVar("T")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DataType(str, Enum):
    """Kinds of civic records the pipeline knows how to map."""

    PROPOSITIONS = "propositions"
    MEETINGS = "meetings"
    REPRESENTATIVES = "representatives"
    CAMPAIGN_FINANCE = "campaign_finance"


def data_type_value(data_type: Union[DataType, str]) -> str:
    return data_type.value if isinstance(data_type, DataType) else str(data_type)


@dataclass(frozen=True)
class DataSourceConfig:
    """One page or feed to mine.

    ``data_type`` is kept as a plain string so unknown types can flow through
    to the domain mapper, which reports them instead of raising.
    """

    url: str
    data_type: str
    content_goal: str = ""
    category: Optional[str] = None
    hints: Tuple[str, ...] = ()
    source_type: str = "html_scrape"
    rate_limit_override: Optional[float] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "data_type", data_type_value(self.data_type))
        object.__setattr__(self, "hints", tuple(self.hints or ()))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DataSourceConfig":
        """Build from a config mapping using either camelCase or snake_case keys."""
        return cls(
            url=data["url"],
            data_type=data.get("data_type", data.get("dataType", "")),
            content_goal=data.get("content_goal", data.get("contentGoal", "")),
            category=data.get("category"),
            hints=tuple(data.get("hints") or ()),
            source_type=data.get("source_type", data.get("sourceType", "html_scrape")),
            rate_limit_override=data.get("rate_limit_override", data.get("rateLimitOverride")),
        )


class ManifestKey(NamedTuple):
    """Identity of a manifest lineage."""

    region_id: str
    source_url: str
    data_type: str

    def __str__(self) -> str:
        return f"{self.region_id}/{self.source_url}/{self.data_type}"


@dataclass
class StructuralManifest:
    """A versioned, reusable extraction recipe for one manifest key."""

    source_url: str
    data_type: str
    structure_hash: str
    prompt_hash: str
    extraction_rules: ExtractionRuleSet
    confidence: float
    region_id: str = ""
    version: int = 0
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    success_count: int = 0
    failure_count: int = 0
    consecutive_failures: int = 0
    is_active: bool = False
    llm_provider: Optional[str] = None
    llm_model: Optional[str] = None
    llm_tokens_used: Optional[int] = None
    analysis_time_ms: Optional[int] = None
    prompt_version: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    last_used_at: Optional[datetime] = None
    last_checked_at: Optional[datetime] = None

    @property
    def key(self) -> ManifestKey:
        return ManifestKey(self.region_id, self.source_url, self.data_type)

    def copy(self, **changes: Any) -> "StructuralManifest":
        return replace(self, **changes)


@dataclass
class RawExtractionResult:
    """Untyped records produced by applying a manifest to HTML."""

    items: List[Dict[str, Any]] = field(default_factory=list)
    success: bool = False
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    failure: Optional[ExtractionError] = None
    dropped: List[FieldValidationError] = field(default_factory=list)
    pages_fetched: int = 1

    @classmethod
    def failed(cls, error: ExtractionError, warnings: Optional[List[str]] = None) -> "RawExtractionResult":
        return cls(
            items=[],
            success=False,
            warnings=list(warnings or []),
            errors=[error.message],
            failure=error,
        )


@dataclass
class ExtractionResult(Generic[T]):
    """Typed, mapped output of one pipeline run."""

    items: List[T] = field(default_factory=list)
    manifest_version: int = 0
    success: bool = False
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    extraction_time_ms: int = 0
    items_failed: int = 0


@dataclass
class PipelineMetrics:
    """Telemetry emitted once per orchestrator run."""

    region_id: str
    source_url: str
    data_type: str
    manifest_cache_hit: bool = False
    structure_changed: bool = False
    prompt_changed: bool = False
    structure_analysis_ms: Optional[int] = None
    extraction_ms: int = 0
    items_extracted: int = 0
    items_failed: int = 0
    self_heal_triggered: bool = False
    manifest_version: Optional[int] = None
    llm_provider: Optional[str] = None
    llm_model: Optional[str] = None
    llm_tokens_used: Optional[int] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


@dataclass
class PipelineRun(Generic[T]):
    """Return value of a pipeline run."""

    result: ExtractionResult[T]
    metrics: PipelineMetrics
