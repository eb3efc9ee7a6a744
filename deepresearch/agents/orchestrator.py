from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Sequence
from uuid import uuid4

from loguru import logger

from deepresearch.config import settings
from deepresearch.errors import (
    MalformedResponseError,
    ResearchAgentError,
    ValidationError,
)
from deepresearch.models.research import (
    DEPTH_PROFILES,
    AgentRole,
    DepthProfile,
    ModelConfig,
    ProgressEvent,
    ProgressSink,
    ProgressStage,
    RankedSource,
    ResearchDepth,
    ResearchMetadata,
    ResearchOptions,
    ResearchResult,
    ResearchSession,
    ScrapedItem,
    SearchHit,
)
from deepresearch.models.responses import (
    EvaluationResponse,
    FilteringResponse,
    PlanningResponse,
    SummaryResponse,
    parse_llm_json,
)
from deepresearch.services import logger as log_service
from deepresearch.services.cache import KeyedCache
from deepresearch.services.cost import CostLedger, estimate_tokens
from deepresearch.services.prompt_store import render_prompt
from deepresearch.services.quality import validate_query

MAX_FOLLOW_UP_QUERIES = 3

# Progress percentages outside the round loop. Rounds share the span in between.
PROGRESS_PLANNING = 10
PROGRESS_ROUNDS_START = 15
PROGRESS_ROUNDS_END = 80
PROGRESS_RANKING = 85
PROGRESS_REPORTING = 95
PROGRESS_DONE = 100


class ProgressReporter:
    """Forwards progress to the caller's sink, clamped so it never goes backwards."""

    def __init__(self, sink: ProgressSink | None):
        self._sink = sink
        self.last = 0

    def emit(self, stage: ProgressStage, message: str, progress: float, **details: Any) -> None:
        value = max(self.last, min(PROGRESS_DONE, int(progress)))
        self.last = value
        if self._sink is None:
            return
        try:
            self._sink(ProgressEvent(stage=stage, message=message, progress=value, details=details))
        except Exception as exc:
            logger.warning(f"Progress sink raised {exc.__class__.__name__}: {exc}")


@dataclass
class _Run:
    """Per-``execute`` context so concurrent sessions never share state."""

    session: ResearchSession
    ledger: CostLedger
    progress: ProgressReporter
    prompts: dict[str, str] = field(default_factory=dict)
    started_at: float = field(default_factory=time.monotonic)

    @property
    def profile(self) -> DepthProfile:
        return self.session.profile

    def round_progress(self, round_index: int, fraction: float) -> float:
        span = (PROGRESS_ROUNDS_END - PROGRESS_ROUNDS_START) / max(self.profile.max_rounds, 1)
        return PROGRESS_ROUNDS_START + (round_index + fraction) * span


class ResearchOrchestrator:
    """Round-based research loop.

    Flow:
      1. Plan initial search queries (round 0)
      2. Each later round: evaluate gaps, stop when the goal is met
      3. Search sequentially with pacing, merge hits by URL
      4. Scrape (cache first), score quality, summarize every item
      5. Rank the deduplicated sources and write the final report

    Any failure in 1-5 falls back to a partial report when allowed and at
    least one source was gathered.
    """

    def __init__(
        self,
        llm: Any,
        search: Any,
        scraper: Any,
        cache: KeyedCache | None = None,
        model_config: ModelConfig | None = None,
        *,
        default_depth: ResearchDepth | str | None = None,
        search_pacing: float | None = None,
        summary_concurrency: int | None = None,
        summary_content_chars: int | None = None,
        rank_snippet_chars: int | None = None,
        report_max_sources: int | None = None,
        report_content_chars: int | None = None,
        partial_report_max_sources: int | None = None,
        report_max_tokens: int | None = None,
    ):
        self.llm = llm
        self.search = search
        self.scraper = scraper
        self.cache = cache if cache is not None else KeyedCache(settings.cache_path, enabled=False)
        self.model_config = model_config or ModelConfig()
        self.default_depth = default_depth or settings.default_depth
        self.search_pacing = settings.search_pacing_seconds if search_pacing is None else search_pacing
        self.summary_concurrency = max(
            int(settings.summary_concurrency if summary_concurrency is None else summary_concurrency), 1
        )
        self.summary_content_chars = summary_content_chars or settings.summary_content_chars
        self.rank_snippet_chars = rank_snippet_chars or settings.rank_snippet_chars
        self.report_max_sources = report_max_sources or settings.report_max_sources
        self.report_content_chars = report_content_chars or settings.report_content_chars
        self.partial_report_max_sources = partial_report_max_sources or settings.partial_report_max_sources
        self.report_max_tokens = report_max_tokens or settings.report_max_tokens

    async def execute(self, query: str, options: ResearchOptions | None = None) -> ResearchResult:
        options = options or ResearchOptions()
        query = query.strip()
        if not query:
            raise ValidationError("Query cannot be empty")
        depth = self._resolve_depth(options.depth)

        session = ResearchSession(
            query=query,
            depth=depth,
            profile=DEPTH_PROFILES[depth],
            session_id=uuid4().hex,
            cancel_event=options.cancel_event,
        )
        run = _Run(
            session=session,
            ledger=CostLedger(options.enable_cost_tracking),
            progress=ProgressReporter(options.on_progress),
            prompts=dict(options.custom_prompts),
        )
        log_service.log_event(
            event_type="research_started",
            message="Research started",
            session_id=session.session_id,
            depth=depth.value,
            query=query[:100],
        )

        try:
            report = await self._run_pipeline(run)
        except Exception as exc:
            logger.warning(f"Research error: {exc}")
            if not options.allow_partial_results or not session.items:
                log_service.log_research_step(
                    session.session_id, "session", "failed", {"error": str(exc)}
                )
                raise
            return await self._partial_result(run, exc)

        run.progress.emit(ProgressStage.REPORTING, "Research complete!", PROGRESS_DONE)
        log_service.log_research_step(
            session.session_id,
            "session",
            "completed",
            {"rounds": session.round, "sources": len(session.items)},
        )
        return ResearchResult(report=report, metadata=self._metadata(run))

    def _resolve_depth(self, depth: ResearchDepth | str | None) -> ResearchDepth:
        value = depth or self.default_depth
        try:
            return ResearchDepth(value)
        except ValueError as exc:
            allowed = ", ".join(d.value for d in ResearchDepth)
            raise ValidationError(f"Invalid depth '{value}' (expected one of: {allowed})") from exc

    async def _run_pipeline(self, run: _Run) -> str:
        session = run.session
        planned = await self._plan(run)

        for round_index in range(run.profile.max_rounds):
            session.check_cancelled()
            queries = planned if round_index == 0 else await self._evaluate(run, round_index)
            if not queries:
                break

            session.start_round()
            hits = await self._search_round(run, round_index, queries)
            items = await self._scrape_round(run, round_index, hits)
            session.items.extend(items)
            summaries = await self._summarize(run, round_index, items)
            session.summaries.extend(summaries)
            await self.cache.save_session(session.snapshot())

        ranked = await self._rank(run)
        session.check_cancelled()
        run.progress.emit(ProgressStage.REPORTING, "Generating final research report...", PROGRESS_REPORTING)
        return await self._compose_report(run, [source.item for source in ranked], self.report_max_sources)

    # Steps

    async def _plan(self, run: _Run) -> list[str]:
        session = run.session
        session.check_cancelled()
        run.progress.emit(
            ProgressStage.PLANNING, "Analyzing query and generating search strategy...", PROGRESS_PLANNING
        )

        prompt = render_prompt(
            "planning",
            run.prompts,
            query=session.query,
            min_queries=run.profile.min_initial_queries,
            max_queries=run.profile.max_initial_queries,
        )
        text = await self._generate(run, "planning", AgentRole.PLANNER, prompt)
        try:
            plan = parse_llm_json(text, PlanningResponse)
            candidates = [q.query for q in plan.queries]
        except MalformedResponseError:
            logger.warning("Planning response unparseable, searching the original query")
            candidates = [session.query]

        valid = self._valid_queries(candidates)
        if not valid and validate_query(session.query).valid:
            valid = [session.query]
        planned = valid[: run.profile.max_initial_queries]
        log_service.log_research_step(
            session.session_id, "plan", "completed", {"candidates": len(candidates), "queries": planned}
        )
        return planned

    async def _evaluate(self, run: _Run, round_index: int) -> list[str]:
        """Return follow-up queries; an empty list ends the loop."""
        session = run.session
        session.check_cancelled()
        run.progress.emit(
            ProgressStage.EVALUATING,
            f"Round {round_index + 1}: Analyzing gaps...",
            run.round_progress(round_index, 0.0),
        )

        prompt = render_prompt(
            "evaluator",
            run.prompts,
            query=session.query,
            round=round_index + 1,
            executed_queries="\n".join(f"- {q}" for q in session.executed_queries) or "- (none)",
            summaries="\n---\n".join(session.summaries) or "(no summaries yet)",
        )
        text = await self._generate(run, "evaluation", AgentRole.EVALUATOR, prompt)
        try:
            evaluation = parse_llm_json(text, EvaluationResponse)
        except MalformedResponseError:
            # Unparseable evaluation ends research as if the goal were met.
            logger.warning(
                f"Evaluation response unparseable in round {round_index + 1}; treating as goal met"
            )
            log_service.log_research_step(session.session_id, "evaluation", "unparseable")
            return []

        gaps = evaluation.to_gaps()
        if evaluation.goal_met or not evaluation.follow_up_queries:
            logger.info(f"Research goal met after {session.round} rounds ({len(gaps)} gaps noted)")
            log_service.log_research_step(
                session.session_id, "evaluation", "goal_met", {"gaps": len(gaps)}
            )
            run.progress.emit(
                ProgressStage.EVALUATING,
                "Research goal met, proceeding to final report...",
                PROGRESS_ROUNDS_END,
            )
            return []

        executed = {q.strip().lower() for q in session.executed_queries}
        candidates = [
            item.query for item in evaluation.follow_up_queries if item.query.strip().lower() not in executed
        ]
        follow_ups = self._valid_queries(candidates)[:MAX_FOLLOW_UP_QUERIES]
        log_service.log_research_step(
            session.session_id,
            "evaluation",
            "follow_up",
            {"gaps": [f"{gap.kind}: {gap.description}" for gap in gaps], "queries": follow_ups},
        )
        return follow_ups

    async def _search_round(self, run: _Run, round_index: int, queries: Sequence[str]) -> list[SearchHit]:
        session = run.session
        session.check_cancelled()
        run.progress.emit(
            ProgressStage.SEARCHING,
            f"Round {round_index + 1}: Executing {len(queries)} search queries...",
            run.round_progress(round_index, 0.15),
            queries=list(queries),
        )

        merged: dict[str, SearchHit] = {}
        for i, query in enumerate(queries):
            if i > 0 and self.search_pacing > 0:
                await asyncio.sleep(self.search_pacing)
            hits = await self.search.search(query, run.profile.max_results_per_query)
            session.executed_queries.append(query)
            for hit in hits:
                merged.setdefault(hit.url, hit)

        log_service.log_research_step(
            session.session_id,
            "search",
            "completed",
            {"round": round_index + 1, "queries": len(queries), "unique_results": len(merged)},
        )
        return list(merged.values())

    async def _scrape_round(self, run: _Run, round_index: int, hits: Sequence[SearchHit]) -> list[ScrapedItem]:
        session = run.session
        session.check_cancelled()
        run.progress.emit(
            ProgressStage.SCRAPING,
            f"Round {round_index + 1}: Fetching content from {len(hits)} sources...",
            run.round_progress(round_index, 0.4),
        )

        # Duplicate marking happens before any fetch, whatever its outcome.
        duplicates = [session.mark_seen(hit.url) for hit in hits]
        cached = [await self.cache.get(hit.url) for hit in hits]
        misses = [hit for hit, content in zip(hits, cached) if content is None]
        pages = iter(await self.scraper.scrape_many(misses) if misses else [])

        items: list[ScrapedItem] = []
        for hit, is_duplicate, cached_content in zip(hits, duplicates, cached):
            if cached_content is not None:
                items.append(
                    ScrapedItem.create(
                        title=hit.title,
                        url=hit.url,
                        content=cached_content,
                        was_cached=True,
                        is_duplicate=is_duplicate,
                    )
                )
                continue

            page = next(pages)
            items.append(
                ScrapedItem.create(
                    title=page.title or hit.title,
                    url=hit.url,
                    content=page.content,
                    was_cached=False,
                    is_duplicate=is_duplicate,
                )
            )
            if not page.fallback:
                await self.cache.set(hit.url, page.content)

        items.sort(key=lambda item: item.quality_score, reverse=True)
        if items:
            avg_quality = sum(item.quality_score for item in items) / len(items)
            logger.info(
                f"Scraped {len(items)} sources ({sum(duplicates)} duplicates, "
                f"{len(hits) - len(misses)} cached, avg quality: {avg_quality:.0f}%)"
            )
        return items

    async def _summarize(self, run: _Run, round_index: int, items: Sequence[ScrapedItem]) -> list[str]:
        session = run.session
        session.check_cancelled()
        run.progress.emit(
            ProgressStage.SUMMARIZING,
            f"Round {round_index + 1}: Synthesizing content...",
            run.round_progress(round_index, 0.7),
        )

        async def _one(item: ScrapedItem) -> str:
            prompt = render_prompt(
                "summarizer",
                run.prompts,
                query=session.query,
                title=item.title,
                url=item.url,
                content=item.content[: self.summary_content_chars],
            )
            text = await self._generate(run, "summarize", AgentRole.SUMMARIZER, prompt)
            try:
                summary = parse_llm_json(text, SummaryResponse)
            except MalformedResponseError:
                return f"[{item.title}]({item.url})\n{text}\n"
            return f"[{item.title}]({item.url})\n{summary.summary}\nKey takeaway: {summary.key_takeaway}\n"

        if self.summary_concurrency <= 1:
            return [await _one(item) for item in items]

        semaphore = asyncio.Semaphore(self.summary_concurrency)

        async def _bounded(item: ScrapedItem) -> str:
            async with semaphore:
                return await _one(item)

        tasks = [asyncio.create_task(_bounded(item)) for item in items]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            # One failure aborts the round; stop the remaining LLM calls.
            for task in tasks:
                task.cancel()
            raise

    async def _rank(self, run: _Run) -> list[RankedSource]:
        session = run.session
        session.check_cancelled()
        run.progress.emit(ProgressStage.EVALUATING, "Ranking sources by relevance...", PROGRESS_RANKING)

        items = sorted(session.unique_items(), key=lambda item: item.quality_score, reverse=True)
        fallback = [RankedSource(item=item) for item in items]
        if not items:
            return fallback

        sources = "\n".join(
            f"{i}. [{item.title}]({item.url}) (quality {item.quality_score})\n"
            f"   Snippet: {item.content[: self.rank_snippet_chars]}..."
            for i, item in enumerate(items)
        )
        prompt = render_prompt("filter", run.prompts, query=session.query, sources=sources)
        text = await self._generate(run, "filter", AgentRole.FILTER, prompt)
        try:
            filtering = parse_llm_json(text, FilteringResponse)
        except MalformedResponseError:
            logger.warning("Ranking response unparseable, keeping quality order")
            return fallback

        ranked: list[RankedSource] = []
        used: set[int] = set()
        for entry in filtering.ranked_sources:
            if entry.index in used or not 0 <= entry.index < len(items):
                continue
            used.add(entry.index)
            ranked.append(RankedSource(item=items[entry.index], relevance=entry.relevance, reason=entry.reason))

        if not ranked:
            logger.warning("Ranking returned no usable sources, keeping quality order")
            return fallback
        log_service.log_research_step(
            session.session_id,
            "rank",
            "completed",
            {"ranked": len(ranked), "excluded": len(filtering.excluded)},
        )
        return ranked

    async def _compose_report(self, run: _Run, items: Sequence[ScrapedItem], max_sources: int) -> str:
        limited = list(items)[:max_sources]
        sources = "\n---\n".join(
            f"[{i + 1}] {item.title}\nURL: {item.url}\nContent:\n{item.content[: self.report_content_chars]}\n"
            for i, item in enumerate(limited)
        )
        prompt = render_prompt("reporter", run.prompts, query=run.session.query, sources=sources)
        return await self._generate(
            run, "report", AgentRole.REPORTER, prompt, max_tokens=self.report_max_tokens
        )

    # Failure path

    async def _partial_result(self, run: _Run, exc: Exception) -> ResearchResult:
        session = run.session
        items = sorted(session.unique_items(), key=lambda item: item.quality_score, reverse=True)
        logger.info(f"Returning partial results with {len(session.items)} sources")

        try:
            report = await self._compose_report(run, items, self.partial_report_max_sources)
        except Exception as report_exc:
            logger.warning(f"Partial report generation failed, using basic summary: {report_exc}")
            report = basic_summary(session.query, items)

        metadata = self._metadata(run)
        metadata.partial = True
        metadata.error = str(exc) or exc.__class__.__name__
        metadata.error_code = exc.code if isinstance(exc, ResearchAgentError) else "UNKNOWN_ERROR"
        log_service.log_research_step(
            session.session_id,
            "session",
            "partial",
            {"error": metadata.error, "error_code": metadata.error_code, "sources": len(session.items)},
        )
        return ResearchResult(report=report, metadata=metadata)

    # Helpers

    async def _generate(
        self,
        run: _Run,
        step: str,
        role: AgentRole,
        prompt: str,
        *,
        max_tokens: int | None = None,
    ) -> str:
        model = self.model_config.resolve(role, run.profile.model_tier_boost)
        cached = await self.cache.get_llm(model, prompt)
        if cached is not None:
            log_service.log_llm_call(model=model, caller=f"orchestrator.{step}", cached=True)
            return cached

        t0 = time.monotonic()
        try:
            text = await self.llm.generate(prompt, model=model, max_tokens=max_tokens)
        except Exception as exc:
            log_service.log_llm_call(
                model=model,
                caller=f"orchestrator.{step}",
                duration_ms=int((time.monotonic() - t0) * 1000),
                status="error",
                error=str(exc),
            )
            raise

        prompt_tokens = estimate_tokens(prompt)
        completion_tokens = estimate_tokens(text)
        run.ledger.log_usage(step, model, prompt_tokens, completion_tokens)
        log_service.log_llm_call(
            model=model,
            caller=f"orchestrator.{step}",
            input_tokens=prompt_tokens,
            output_tokens=completion_tokens,
            duration_ms=int((time.monotonic() - t0) * 1000),
        )
        await self.cache.set_llm(model, prompt, text)
        return text

    @staticmethod
    def _valid_queries(candidates: Sequence[str]) -> list[str]:
        valid: list[str] = []
        for candidate in candidates:
            result = validate_query(candidate)
            if not result.valid:
                logger.warning(f'Skipping invalid query: "{candidate}" - {result.reason}')
                continue
            valid.append(candidate.strip())
        return valid

    def _metadata(self, run: _Run) -> ResearchMetadata:
        session = run.session
        return ResearchMetadata(
            queries_executed=list(session.executed_queries),
            sources_scraped=len(session.items),
            total_duration_ms=int((time.monotonic() - run.started_at) * 1000),
            rounds=session.round,
            costs=run.ledger.get_breakdown(),
        )


def basic_summary(query: str, items: Sequence[ScrapedItem]) -> str:
    """Plain-text fallback report built without any LLM call."""
    sources = "\n".join(f"{i + 1}. [{item.title}]({item.url})" for i, item in enumerate(items[:10]))
    count = len(items)
    plural = "" if count == 1 else "s"
    return (
        f"# Partial Research Results: {query}\n\n"
        "**Note:** This is a partial result due to an error during research. "
        "The following sources were collected before the error occurred.\n\n"
        "## Sources Found\n\n"
        f"{sources}\n\n"
        "## Summary\n\n"
        f"Research was interrupted after collecting {count} source{plural}. "
        f"Please review the sources above for information related to: {query}\n\n"
        "---\n"
        "*This is a partial result. Consider re-running the research or manually reviewing "
        "the sources listed above.*\n"
    )
