"""
SynthesisPipeline - runs Phase 1 (discovery and scoring) and Phase 2
(development) for one digest under a wall-clock budget.
"""
import asyncio
import logging
import time
from typing import AsyncIterator, Callable, List, Optional

import aiosqlite
from pydantic import ValidationError as SchemaError

from core.entities import DevelopedSynthesis, PipelineResult, ProgressEvent, RunState
from core.errors import BatchReport, SynthesisEngineError, ValidationError
from core.prompts import SynthesisPrompt
from core.schemas import PipelineOptions
from processing.developer import SynthesisDeveloper, best_per_source
from processing.discovery import CandidateDiscovery, IndexCache
from services.config import SynthesisConfig
from services.repository import ItemRepository
from services.synthesis_store import SynthesisStore
from workflows.base import Pipeline

logger = logging.getLogger(__name__)


class _Stop(Exception):
    """Internal: a checkpoint decided to end the run early."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class SynthesisPipeline(Pipeline):
    name = "synthesis"

    def __init__(
        self,
        repository: ItemRepository,
        store: SynthesisStore,
        discovery: CandidateDiscovery,
        developer: SynthesisDeveloper,
        settings: Optional[SynthesisConfig] = None,
        prompt: Optional[SynthesisPrompt] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.repository = repository
        self.store = store
        self.discovery = discovery
        self.developer = developer
        self.settings = settings or SynthesisConfig()
        self.prompt = prompt or discovery.prompt
        self.clock = clock

    def default_options(self) -> PipelineOptions:
        return PipelineOptions(
            max_items_to_process=self.settings.max_items_to_process,
            max_candidates_per_item=self.settings.max_candidates_per_item,
            min_similarity=self.settings.min_similarity,
            max_age_days=self.settings.max_age_days,
        )

    def _resolve_options(self, options) -> PipelineOptions:
        if options is None:
            return self.default_options()
        if isinstance(options, PipelineOptions):
            return options
        try:
            merged = {**self.default_options().model_dump(), **dict(options)}
            return PipelineOptions.model_validate(merged)
        except SchemaError as e:
            raise ValidationError(f"Invalid pipeline options: {e.error_count()} invalid fields") from e

    async def run_with_progress(
        self,
        digest_id: str,
        options: Optional[PipelineOptions] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[ProgressEvent]:
        result = PipelineResult(digest_id=digest_id)
        try:
            async for event in self._execute(digest_id, options, cancel_event, result):
                yield event
        except SynthesisEngineError as e:
            yield self._failed(result, e)
            return
        except aiosqlite.Error as e:
            yield self._failed(result, SynthesisEngineError(f"Storage error: {e}"))
            return

        yield ProgressEvent(
            type="complete",
            phase=result.state.value,
            current=result.syntheses_developed,
            total=result.syntheses_developed,
            label=result.stopped_early or "done",
            data=result.to_dict(),
        )

    def _failed(self, result: PipelineResult, error: SynthesisEngineError) -> ProgressEvent:
        result.state = RunState.FAILED
        logger.error(f"Synthesis run for digest {result.digest_id} failed: {error.message}")
        return ProgressEvent(type="error", phase=result.state.value, label=error.message, data=error.to_payload())

    async def run(
        self,
        digest_id: str,
        options: Optional[PipelineOptions] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> PipelineResult:
        result = PipelineResult(digest_id=digest_id)
        try:
            async for event in self._execute(digest_id, options, cancel_event, result):
                logger.debug(f"[{event.phase}] {event.current}/{event.total} {event.label}")
        except SynthesisEngineError:
            result.state = RunState.FAILED
            raise
        return result

    async def get_syntheses(self, digest_id: str) -> List[DevelopedSynthesis]:
        if not digest_id or not digest_id.strip():
            raise ValidationError("digest_id is required")
        await self.repository.get_digest(digest_id)
        return await self.store.get_syntheses(digest_id)

    def _checkpoint(self, deadline: float, cancel_event: Optional[asyncio.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise _Stop("cancelled")
        if self.clock() >= deadline:
            raise _Stop("deadline")

    async def _execute(
        self,
        digest_id: str,
        options: Optional[PipelineOptions],
        cancel_event: Optional[asyncio.Event],
        result: PipelineResult,
    ) -> AsyncIterator[ProgressEvent]:
        if not digest_id or not str(digest_id).strip():
            raise ValidationError("digest_id is required")
        opts = self._resolve_options(options)
        deadline = self.clock() + self.settings.run_budget_seconds

        result.state = RunState.DISCOVERING
        digest = await self.repository.get_digest(digest_id)
        items = await self.repository.get_digest_items(digest)

        logger.info(
            f"Synthesis run for digest {digest_id}: {len(items)} items",
            extra={"digest_id": digest_id, "phase": result.state.value},
        )

        try:
            async for event in self._discover(digest_id, items, opts, deadline, cancel_event, result):
                yield event
            async for event in self._develop(digest_id, deadline, cancel_event, result):
                yield event
        except _Stop as stop:
            result.stopped_early = stop.reason
            logger.warning(
                f"Synthesis run for digest {digest_id} stopped early ({stop.reason}) "
                f"during {result.state.value}"
            )

        result.state = RunState.COMPLETE
        logger.info(
            f"Synthesis run for digest {digest_id} complete: "
            f"{result.items_processed} items, {result.candidates_created} candidates, "
            f"{result.syntheses_developed} syntheses, {result.errors} errors"
        )

    async def _discover(self, digest_id, items, opts, deadline, cancel_event, result) -> AsyncIterator[ProgressEvent]:
        already = await self.store.source_items_with_candidates(digest_id)
        fresh = [item for item in items if item.id not in already]
        result.skipped_existing += len(items) - len(fresh)
        to_process = fresh[:opts.max_items_to_process]

        yield ProgressEvent(
            type="progress",
            phase=RunState.DISCOVERING.value,
            current=0,
            total=len(to_process),
            label=f"{len(to_process)} items to process ({len(items) - len(fresh)} already done)",
        )

        result.state = RunState.SCORING
        cache: IndexCache = {}
        for index, item in enumerate(to_process, start=1):
            self._checkpoint(deadline, cancel_event)
            yield ProgressEvent(
                type="progress",
                phase=RunState.SCORING.value,
                current=index,
                total=len(to_process),
                label=item.title[:50],
            )

            report = BatchReport()
            try:
                candidates = await self.discovery.find_candidates(
                    item,
                    digest_id,
                    min_similarity=opts.min_similarity,
                    max_age_days=opts.max_age_days,
                    max_results=opts.max_candidates_per_item,
                    cache=cache,
                    report=report,
                )
            except SynthesisEngineError as e:
                logger.error(f"Discovery failed for item {item.id}: {e.message}")
                result.errors += 1
                result.error_messages.append(f"{item.id}: {e.message}")
                continue

            result.candidates_created += await self.store.store_candidates(candidates)
            result.items_processed += 1
            result.errors += report.errors
            result.error_messages.extend(report.messages)

    async def _develop(self, digest_id, deadline, cancel_event, result) -> AsyncIterator[ProgressEvent]:
        result.state = RunState.DEVELOPING
        best = best_per_source(await self.store.get_candidates(digest_id))
        developed = await self.store.developed_candidate_ids(digest_id)
        pending = [c for c in best if c.id not in developed]
        result.skipped_existing += len(best) - len(pending)

        item_ids = sorted({c.source_item_id for c in pending} | {c.related_item_id for c in pending})
        items = await self.repository.get_item_content(item_ids)

        for index, candidate in enumerate(pending, start=1):
            self._checkpoint(deadline, cancel_event)
            yield ProgressEvent(
                type="progress",
                phase=RunState.DEVELOPING.value,
                current=index,
                total=len(pending),
                label=f"candidate {candidate.id} ({candidate.synthesis_type.value})",
            )

            try:
                context = self.developer.build_context(candidate, items)
                synthesis = await self.developer.develop(
                    context,
                    self.prompt.development_prompt,
                    self.prompt.core_thesis,
                    timeout_ms=self.settings.development_timeout_ms,
                )
            except SynthesisEngineError as e:
                logger.warning(f"Development failed for candidate {candidate.id}: {e.message}")
                result.errors += 1
                result.error_messages.append(f"candidate {candidate.id}: {e.message}")
                continue

            if await self.store.store_synthesis(synthesis):
                result.syntheses_developed += 1
            else:
                result.skipped_existing += 1

            if index < len(pending) and self.settings.development_delay > 0:
                await asyncio.sleep(self.settings.development_delay)
