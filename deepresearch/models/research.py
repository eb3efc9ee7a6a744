from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any, Callable, Literal

from pydantic import BaseModel, Field

from deepresearch.errors import ResearchCancelledError
from deepresearch.services.quality import score_content

Relevance = Literal["high", "medium", "low"]
ProgressSink = Callable[["ProgressEvent"], None]


class ResearchDepth(StrEnum):
    SHALLOW = "shallow"
    NORMAL = "normal"
    DEEP = "deep"


class ModelTier(StrEnum):
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"


class AgentRole(StrEnum):
    PLANNER = "planner"
    SUMMARIZER = "summarizer"
    EVALUATOR = "evaluator"
    FILTER = "filter"
    REPORTER = "reporter"


class ProgressStage(StrEnum):
    PLANNING = "planning"
    SEARCHING = "searching"
    SCRAPING = "scraping"
    SUMMARIZING = "summarizing"
    EVALUATING = "evaluating"
    REPORTING = "reporting"


@dataclass(frozen=True, slots=True)
class DepthProfile:
    min_initial_queries: int
    max_initial_queries: int
    min_results_per_query: int
    max_results_per_query: int
    max_rounds: int
    model_tier_boost: int


DEPTH_PROFILES: dict[ResearchDepth, DepthProfile] = {
    ResearchDepth.SHALLOW: DepthProfile(2, 3, 3, 5, max_rounds=1, model_tier_boost=0),
    ResearchDepth.NORMAL: DepthProfile(3, 5, 5, 8, max_rounds=2, model_tier_boost=0),
    ResearchDepth.DEEP: DepthProfile(5, 7, 8, 12, max_rounds=3, model_tier_boost=1),
}

TIER_ORDER = [ModelTier.SMALL, ModelTier.MEDIUM, ModelTier.LARGE]

DEFAULT_MODELS: dict[ModelTier, str] = {
    ModelTier.SMALL: "meta-llama/llama-3.1-8b-instruct",
    ModelTier.MEDIUM: "google/gemini-2.5-flash-preview-09-2025",
    ModelTier.LARGE: "deepseek/deepseek-chat",
}

DEFAULT_AGENT_TIERS: dict[AgentRole, ModelTier] = {
    AgentRole.PLANNER: ModelTier.MEDIUM,
    AgentRole.SUMMARIZER: ModelTier.SMALL,
    AgentRole.EVALUATOR: ModelTier.MEDIUM,
    AgentRole.FILTER: ModelTier.SMALL,
    AgentRole.REPORTER: ModelTier.LARGE,
}


class ModelConfig(BaseModel):
    """Per-role model selection.

    Precedence: ``custom_models[role]`` > ``tier_models[tier]`` > ``DEFAULT_MODELS[tier]``,
    where the tier comes from ``tiers[role]`` or the role's default tier.
    """

    tiers: dict[AgentRole, ModelTier] = Field(default_factory=dict)
    custom_models: dict[AgentRole, str] = Field(default_factory=dict)
    tier_models: dict[ModelTier, str] = Field(default_factory=dict)

    def resolve(self, role: AgentRole, tier_boost: int = 0) -> str:
        custom = self.custom_models.get(role)
        if custom:
            return custom

        tier = self.tiers.get(role)
        if tier is None:
            # Depth boost only lifts default tiers, never an explicit choice.
            default_tier = DEFAULT_AGENT_TIERS[role]
            index = min(TIER_ORDER.index(default_tier) + max(tier_boost, 0), len(TIER_ORDER) - 1)
            tier = TIER_ORDER[index]

        return self.tier_models.get(tier) or DEFAULT_MODELS[tier]


@dataclass(slots=True)
class SearchHit:
    title: str
    url: str
    snippet: str = ""


@dataclass(frozen=True, slots=True)
class ScrapedItem:
    title: str
    url: str
    content: str
    was_cached: bool
    quality_score: int
    is_duplicate: bool = False

    @classmethod
    def create(
        cls,
        *,
        title: str,
        url: str,
        content: str,
        was_cached: bool,
        is_duplicate: bool,
    ) -> "ScrapedItem":
        return cls(
            title=title,
            url=url,
            content=content,
            was_cached=was_cached,
            quality_score=score_content(title, url, content),
            is_duplicate=is_duplicate,
        )


@dataclass(frozen=True, slots=True)
class Gap:
    kind: Literal["entity", "conceptual"]
    description: str
    impact: Relevance


@dataclass(frozen=True, slots=True)
class RankedSource:
    item: ScrapedItem
    relevance: Relevance = "medium"
    reason: str = ""


@dataclass(frozen=True, slots=True)
class UsageEntry:
    step: str
    model: str
    prompt_tokens: int
    completion_tokens: int


@dataclass(slots=True)
class CostLine:
    step: str
    model: str
    tokens: int
    cost: float


@dataclass(slots=True)
class CostBreakdown:
    total_tokens: int
    estimated_cost: float
    breakdown: list[CostLine] = field(default_factory=list)


@dataclass(slots=True)
class ProgressEvent:
    stage: ProgressStage
    message: str
    progress: int
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ResearchOptions:
    depth: ResearchDepth | str | None = None
    on_progress: ProgressSink | None = None
    cancel_event: asyncio.Event | None = None
    allow_partial_results: bool = True
    enable_cost_tracking: bool = False
    custom_prompts: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class ResearchMetadata:
    queries_executed: list[str]
    sources_scraped: int
    total_duration_ms: int
    rounds: int
    costs: CostBreakdown | None = None
    partial: bool = False
    error: str | None = None
    error_code: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class ResearchResult:
    report: str
    metadata: ResearchMetadata


@dataclass(slots=True)
class ResearchSession:
    """All mutable state for one ``execute`` call."""

    query: str
    depth: ResearchDepth
    profile: DepthProfile
    session_id: str
    cancel_event: asyncio.Event | None = None
    round: int = 0
    seen_urls: set[str] = field(default_factory=set)
    executed_queries: list[str] = field(default_factory=list)
    summaries: list[str] = field(default_factory=list)
    items: list[ScrapedItem] = field(default_factory=list)

    def check_cancelled(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise ResearchCancelledError()

    def mark_seen(self, url: str) -> bool:
        """Record ``url`` and return True when it had already been seen."""
        duplicate = url in self.seen_urls
        self.seen_urls.add(url)
        return duplicate

    def start_round(self) -> None:
        if self.round >= self.profile.max_rounds:
            raise RuntimeError("round limit exceeded")
        self.round += 1

    def unique_items(self) -> list[ScrapedItem]:
        seen: set[str] = set()
        unique: list[ScrapedItem] = []
        for item in self.items:
            if item.url in seen:
                continue
            seen.add(item.url)
            unique.append(item)
        return unique

    def snapshot(self) -> dict[str, Any]:
        return {
            "id": self.session_id,
            "query": self.query,
            "depth": self.depth.value,
            "current_round": self.round,
            "executed_queries": list(self.executed_queries),
            "scraped_urls": sorted(self.seen_urls),
            "summaries": list(self.summaries),
        }
