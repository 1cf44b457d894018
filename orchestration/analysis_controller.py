# orchestration/analysis_controller.py
"""
Fan a manuscript out across reader archetypes.

The controller chunks the text once, builds the flattened
``archetypes x chunks`` task list and executes it in fixed-size batches.
Every task in a batch runs concurrently; the batch is then folded in slot
order so progress snapshots come out in a deterministic sequence no matter
which request finished first.
"""

from __future__ import annotations

import asyncio
import inspect
import random
from collections import Counter
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog
from config import settings
from core.exceptions import (
    AnalysisAlreadyRunningError,
    ProgressCallbackError,
    is_transient,
)
from core.llm_interface import CompletionClient, CompletionResponse
from core.usage import TokenUsage
from processing.prompt_builder import AnalysisMode, PromptBuilder, PromptRequest
from processing.text_chunking import TextChunker

from models import (
    AnalysisProgress,
    AnalysisResult,
    Archetype,
    ArchetypeSummary,
    Chunk,
    ChunkingOptions,
    Credentials,
    InsightCount,
    PanelSummary,
    ReaderAnalysis,
    ReviewSentiment,
    TaskFailure,
)
from orchestration.cancellation import CancellationToken

logger = structlog.get_logger(__name__)

ProgressCallback = Callable[[AnalysisProgress], Awaitable[None] | None]

TOP_INSIGHTS = 10


class AnalysisState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclass(frozen=True)
class AnalysisTask:
    """One (archetype, chunk) pair of the task matrix."""

    archetype: Archetype
    chunk: Chunk

    @property
    def chunk_index(self) -> int:
        return self.chunk.index


@dataclass
class TaskOutcome:
    """What a single task produced, folded into the run after its batch settles."""

    task: AnalysisTask
    attempts: int = 0
    result: AnalysisResult | None = None
    error: BaseException | None = None
    usage: TokenUsage = field(default_factory=TokenUsage)


def build_task_matrix(
    archetypes: Sequence[Archetype], chunks: Sequence[Chunk]
) -> list[AnalysisTask]:
    """Archetype-major cross product: every chunk for the first archetype, then the next."""
    return [AnalysisTask(archetype, chunk) for archetype in archetypes for chunk in chunks]


def sort_results(
    results: Sequence[AnalysisResult], archetype_ids: Sequence[str] | None = None
) -> list[AnalysisResult]:
    """Reassemble document order: by chunk, then by archetype order."""
    if archetype_ids is None:
        archetype_ids = list(dict.fromkeys(r.archetype_id for r in results))
    rank = {archetype_id: i for i, archetype_id in enumerate(archetype_ids)}
    return sorted(
        results,
        key=lambda r: (r.chunk_index, rank.get(r.archetype_id, len(rank))),
    )


def _mean(values: Sequence[float], digits: int) -> float | None:
    if not values:
        return None
    return round(sum(values) / len(values), digits)


def _summarize_archetype(
    archetype: Archetype, own: Sequence[AnalysisResult]
) -> ArchetypeSummary:
    if not own:
        return ArchetypeSummary(archetype_id=archetype.id, archetype_name=archetype.name)
    last = own[-1]
    sentiments = Counter(r.expected_review_sentiment for r in own)
    return ArchetypeSummary(
        archetype_id=archetype.id,
        archetype_name=archetype.name,
        analyzed_chunks=len(own),
        avg_overall=_mean([r.overall_rating for r in own], 1),
        avg_buying_probability=_mean([r.buying_probability for r in own], 2),
        avg_recommendation_likelihood=_mean(
            [r.recommendation_likelihood for r in own], 2
        ),
        final_rating=last.overall_rating,
        final_buying_probability=last.buying_probability,
        final_recommendation_likelihood=last.recommendation_likelihood,
        review_sentiment=last.expected_review_sentiment,
        positive_reviews=sentiments[ReviewSentiment.POSITIVE],
        neutral_reviews=sentiments[ReviewSentiment.NEUTRAL],
        negative_reviews=sentiments[ReviewSentiment.NEGATIVE],
    )


def summarize_results(
    results: Sequence[AnalysisResult],
    archetypes: Sequence[Archetype],
    top_insights: int = TOP_INSIGHTS,
) -> PanelSummary:
    """Aggregate a run for reporting.

    Per archetype: average and final (last chunk) overall rating, buying
    probability and recommendation likelihood, plus sentiment counts. Panel
    wide: the mean of the final verdicts of archetypes that produced results,
    and the ``top_insights`` most repeated marketing insights (ties keep
    document order).
    """
    ordered = sort_results(results, [a.id for a in archetypes])
    summaries = [
        _summarize_archetype(a, [r for r in ordered if r.archetype_id == a.id])
        for a in archetypes
    ]
    rated = [s for s in summaries if s.analyzed_chunks]
    insight_counts = Counter(
        insight for r in ordered for insight in r.marketing_insights
    )
    return PanelSummary(
        total_archetypes=len(archetypes),
        total_analyzed_chunks=len(ordered),
        overall_rating=_mean([s.final_rating for s in rated], 1),
        overall_buying_probability=_mean(
            [s.final_buying_probability for s in rated], 2
        ),
        archetypes=summaries,
        top_insights=[
            InsightCount(insight=insight, count=count)
            for insight, count in insight_counts.most_common(top_insights)
        ],
    )


async def notify_progress(
    callback: ProgressCallback | None, snapshot: AnalysisProgress
) -> None:
    """Invoke a sync or async progress callback.

    Raises:
        ProgressCallbackError: the callback itself failed.
    """
    if callback is None:
        return
    try:
        maybe_awaitable = callback(snapshot)
        if inspect.isawaitable(maybe_awaitable):
            await maybe_awaitable
    except Exception as exc:
        raise ProgressCallbackError(str(exc) or type(exc).__name__) from exc


class BaseAnalysisController:
    """Lifecycle shared by the analysis controllers.

    Owns the ``idle -> running -> {completed, failed, stopped}`` state machine,
    the per-run cancellation token and the completion client.
    """

    def __init__(
        self,
        client: CompletionClient | None = None,
        prompt_builder: PromptBuilder | None = None,
        chunker: TextChunker | None = None,
        retry_attempts: int | None = None,
        retry_delay: float | None = None,
        model_id: str | None = None,
    ) -> None:
        self._client = client
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.chunker = chunker or TextChunker()
        self.retry_attempts = retry_attempts or settings.LLM_RETRY_ATTEMPTS
        self.retry_delay = (
            settings.LLM_RETRY_DELAY_SECONDS if retry_delay is None else retry_delay
        )
        self.model_id = model_id

        self.state = AnalysisState.IDLE
        self.last_progress: AnalysisProgress | None = None
        self._token = CancellationToken()
        self._results: list[AnalysisResult] = []
        self._failures: list[TaskFailure] = []
        self._api_calls = 0
        self._usage = TokenUsage()

    @property
    def is_running(self) -> bool:
        return self.state == AnalysisState.RUNNING

    @property
    def results(self) -> list[AnalysisResult]:
        return list(self._results)

    def stop(self, reason: str = "Analysis stopped by user") -> None:
        """Request a stop. Takes effect at the next batch boundary."""
        if not self.is_running:
            logger.debug("Stop requested while no analysis is running")
            return
        logger.info("Analysis stop requested", reason=reason)
        self._token.cancel(reason)

    def _begin(self, cancel_token: CancellationToken | None = None) -> None:
        if self.is_running:
            raise AnalysisAlreadyRunningError("An analysis is already running")
        self.state = AnalysisState.RUNNING
        self._token = cancel_token or CancellationToken()
        self._results = []
        self._failures = []
        self._api_calls = 0
        self._usage = TokenUsage()
        self.last_progress = None

    def _snapshot(self, **fields: Any) -> AnalysisProgress:
        snapshot = AnalysisProgress(
            results=list(self._results),
            failures=list(self._failures),
            api_calls=self._api_calls,
            token_usage=self._usage.to_counts(),
            state=self.state.value,
            **fields,
        )
        self.last_progress = snapshot
        return snapshot

    def _finish(self, state: AnalysisState, status: str) -> None:
        self.state = state
        if self.last_progress is None:
            self._snapshot(status=status)
        else:
            self.last_progress = self.last_progress.model_copy(
                update={
                    "status": status,
                    "state": state.value,
                    "results": list(self._results),
                    "failures": list(self._failures),
                }
            )

    async def _backoff(self, attempt: int) -> None:
        delay = self.retry_delay * (2**attempt)
        if delay <= 0:
            return
        jitter = random.uniform(0, delay / 2)
        await asyncio.sleep(delay + jitter)

    async def _complete_with_retry(
        self,
        client: CompletionClient,
        request: PromptRequest,
        credentials: Credentials,
        outcome: TaskOutcome,
    ) -> CompletionResponse:
        """Run one completion, retrying transient failures with backoff.

        Permanent failures (bad request, unparseable or incomplete payloads)
        raise on the first attempt.
        """
        last_exc: Exception | None = None
        for attempt in range(self.retry_attempts):
            outcome.attempts += 1
            try:
                response = await client.complete_request(
                    request, credentials, model_id=self.model_id
                )
            except Exception as exc:
                last_exc = exc
                if not is_transient(exc) or attempt == self.retry_attempts - 1:
                    raise
                logger.warning(
                    f"Completion attempt {attempt + 1}/{self.retry_attempts} failed, retrying: {exc}",
                    archetype_id=outcome.task.archetype.id,
                    chunk_index=outcome.task.chunk_index,
                )
                await self._backoff(attempt)
                continue
            outcome.usage.add(response.usage)
            return response
        # Only reachable with retry_attempts < 1, which settings forbid
        raise RuntimeError(f"No completion attempt was made: {last_exc}")

    def _record_failure(self, task: AnalysisTask, exc: BaseException) -> TaskFailure:
        failure = TaskFailure(
            archetype_id=task.archetype.id,
            archetype_name=task.archetype.name,
            chunk_index=task.chunk_index,
            error_type=type(exc).__name__,
            message=str(exc) or type(exc).__name__,
        )
        self._failures.append(failure)
        logger.warning(
            "Analysis task failed",
            archetype_id=failure.archetype_id,
            chunk_index=failure.chunk_index,
            error_type=failure.error_type,
            error=failure.message,
        )
        return failure


class AnalysisController(BaseAnalysisController):
    """Batched, cancellable persona-by-chunk analysis."""

    def __init__(
        self,
        client: CompletionClient | None = None,
        prompt_builder: PromptBuilder | None = None,
        chunker: TextChunker | None = None,
        batch_size: int | None = None,
        batch_delay: float | None = None,
        retry_attempts: int | None = None,
        retry_delay: float | None = None,
        model_id: str | None = None,
    ) -> None:
        super().__init__(
            client=client,
            prompt_builder=prompt_builder,
            chunker=chunker,
            retry_attempts=retry_attempts,
            retry_delay=retry_delay,
            model_id=model_id,
        )
        self.batch_size = batch_size or settings.ANALYSIS_BATCH_SIZE
        self.batch_delay = (
            settings.BATCH_DELAY_SECONDS if batch_delay is None else batch_delay
        )
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")

    async def run_analysis(
        self,
        text: str,
        archetypes: Sequence[Archetype],
        credentials: Credentials,
        on_progress: ProgressCallback | None = None,
        chunking_options: ChunkingOptions | None = None,
        mode: AnalysisMode = AnalysisMode.STANDARD,
        cancel_token: CancellationToken | None = None,
    ) -> list[AnalysisResult]:
        """Analyze ``text`` with every archetype and return the results gathered.

        Task failures are reported through ``on_progress`` and never raised.
        A stop request or an internal error ends the run early; whatever was
        gathered up to that point is still returned. Passing ``cancel_token``
        lets the owner stop the run through its own token, including before
        the first batch starts.
        """
        template = self.prompt_builder.template_for(mode)
        if template.required_context or not issubclass(
            template.response_model, ReaderAnalysis
        ):
            raise ValueError(
                f"Mode '{mode.value}' does not produce reader analyses on its own"
            )

        self._begin(cancel_token)
        client = self._client or CompletionClient()
        try:
            final_state, status = await self._run(
                client, text, archetypes, credentials, on_progress, chunking_options, mode
            )
        except Exception as exc:
            logger.error("Analysis aborted by an internal error", error=str(exc), exc_info=True)
            final_state, status = AnalysisState.FAILED, f"Analysis failed: {exc}"
        finally:
            if self._client is None:
                await client.aclose()

        self._finish(final_state, status)
        logger.info(
            status,
            state=final_state.value,
            results=len(self._results),
            failures=len(self._failures),
            api_calls=self._api_calls,
        )
        return list(self._results)

    async def _run(
        self,
        client: CompletionClient,
        text: str,
        archetypes: Sequence[Archetype],
        credentials: Credentials,
        on_progress: ProgressCallback | None,
        chunking_options: ChunkingOptions | None,
        mode: AnalysisMode,
    ) -> tuple[AnalysisState, str]:
        chunks = self.chunker.create_chunks(text, chunking_options)
        summary = self.chunker.get_chunking_summary(chunks)
        tasks = build_task_matrix(archetypes, chunks)
        total_steps = len(tasks)
        logger.info(
            f"Starting analysis: {len(archetypes)} archetypes x {len(chunks)} chunks",
            total_steps=total_steps,
            batch_size=self.batch_size,
            mode=mode.value,
        )

        if total_steps == 0:
            self.state = AnalysisState.COMPLETED
            status = "Nothing to analyze"
            await notify_progress(
                on_progress,
                self._snapshot(
                    total_chunks=len(chunks),
                    status=status,
                    chunking_summary=summary,
                ),
            )
            return AnalysisState.COMPLETED, status

        step = 0
        for start in range(0, total_steps, self.batch_size):
            if self._token.cancelled:
                return (
                    AnalysisState.STOPPED,
                    f"Analysis stopped after {step}/{total_steps} tasks",
                )

            batch = tasks[start : start + self.batch_size]
            outcomes = await asyncio.gather(
                *(self._run_task(client, task, credentials, mode) for task in batch),
                return_exceptions=True,
            )

            for task, outcome in zip(batch, outcomes):
                step += 1
                if isinstance(outcome, BaseException):
                    # _run_task captures task errors; anything here escaped it
                    self._api_calls += 1
                    self._record_failure(task, outcome)
                    status = f"Failed chunk {task.chunk_index + 1} for {task.archetype.name}"
                else:
                    self._api_calls += outcome.attempts
                    self._usage.add(outcome.usage)
                    if outcome.result is not None:
                        self._results.append(outcome.result)
                        status = f"Analyzed chunk {task.chunk_index + 1} for {task.archetype.name}"
                    else:
                        self._record_failure(task, outcome.error)
                        status = f"Failed chunk {task.chunk_index + 1} for {task.archetype.name}"

                await notify_progress(
                    on_progress,
                    self._snapshot(
                        current_step=step,
                        total_steps=total_steps,
                        current_archetype=task.archetype.name,
                        current_chunk=task.chunk_index + 1,
                        total_chunks=len(chunks),
                        status=status,
                        chunking_summary=summary,
                    ),
                )

            is_last_batch = start + self.batch_size >= total_steps
            if not is_last_batch and self.batch_delay > 0:
                await self._token.sleep(self.batch_delay)

        if self._token.cancelled and step < total_steps:
            return AnalysisState.STOPPED, f"Analysis stopped after {step}/{total_steps} tasks"
        return (
            AnalysisState.COMPLETED,
            f"Analysis completed: {len(self._results)}/{total_steps} tasks succeeded",
        )

    async def _run_task(
        self,
        client: CompletionClient,
        task: AnalysisTask,
        credentials: Credentials,
        mode: AnalysisMode,
    ) -> TaskOutcome:
        outcome = TaskOutcome(task=task)
        try:
            request = self.prompt_builder.build(
                task.archetype, task.chunk.content, task.chunk_index, mode=mode
            )
            response = await self._complete_with_retry(
                client, request, credentials, outcome
            )
            outcome.result = AnalysisResult.from_analysis(
                task.archetype.id, task.chunk_index, response.parsed
            )
        except Exception as exc:
            outcome.error = exc
        return outcome
