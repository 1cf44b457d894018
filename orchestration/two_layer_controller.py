# orchestration/two_layer_controller.py
"""
Two-layer reading of a manuscript by a single archetype.

For every chunk the persona first writes down raw emotional notes, an
analyst then turns those notes into a structured business review, the two
layers are correlated, and finally the standard rating is collected. The
four calls depend on each other, so chunks are processed strictly in order.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable

import structlog
from config import settings
from core.exceptions import ProgressCallbackError
from core.llm_interface import CompletionClient
from processing.prompt_builder import AnalysisMode, PromptBuilder
from processing.text_chunking import TextChunker

from models import (
    AnalysisProgress,
    AnalyticalReview,
    Archetype,
    Chunk,
    ChunkingOptions,
    Credentials,
    LayerCorrelation,
    RawReaction,
    ReaderAnalysis,
    TwoLayerResult,
)
from orchestration.analysis_controller import (
    AnalysisState,
    AnalysisTask,
    BaseAnalysisController,
    ProgressCallback,
    TaskOutcome,
    notify_progress,
)
from orchestration.cancellation import CancellationToken

logger = structlog.get_logger(__name__)

_STAGE_LABELS = {
    AnalysisMode.RAW_REACTION: "Emotional reading",
    AnalysisMode.BUSINESS_INSIGHT: "Analytical review",
    AnalysisMode.LAYER_CORRELATION: "Layer correlation",
    AnalysisMode.STANDARD: "Overall rating",
}


def two_layer_chunking_options() -> ChunkingOptions:
    return ChunkingOptions(
        max_words_per_chunk=settings.TWO_LAYER_MAX_WORDS_PER_CHUNK,
        min_words_per_chunk=settings.TWO_LAYER_MIN_WORDS_PER_CHUNK,
        preserve_structure=settings.PRESERVE_STRUCTURE,
    )


class TwoLayerAnalysisController(BaseAnalysisController):
    """Sequential emotional + analytical reading for one archetype."""

    def __init__(
        self,
        client: CompletionClient | None = None,
        prompt_builder: PromptBuilder | None = None,
        chunker: TextChunker | None = None,
        chunk_delay: float | None = None,
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
        self.chunk_delay = (
            settings.TWO_LAYER_CHUNK_DELAY_SECONDS if chunk_delay is None else chunk_delay
        )

    async def run_two_layer_analysis(
        self,
        text: str,
        archetype: Archetype,
        credentials: Credentials,
        on_progress: ProgressCallback | None = None,
        chunking_options: ChunkingOptions | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> list[TwoLayerResult]:
        """Read ``text`` chunk by chunk as ``archetype``.

        A chunk whose stages fail is reported and skipped. The run ends
        early only on ``stop()`` or an internal error.
        """
        self._begin(cancel_token)
        client = self._client or CompletionClient()
        try:
            final_state, status = await self._run(
                client,
                text,
                archetype,
                credentials,
                on_progress,
                chunking_options or two_layer_chunking_options(),
            )
        except Exception as exc:
            logger.error(
                "Two-layer analysis aborted by an internal error",
                error=str(exc),
                exc_info=True,
            )
            final_state, status = AnalysisState.FAILED, f"Two-layer analysis failed: {exc}"
        finally:
            if self._client is None:
                await client.aclose()

        self._finish(final_state, status)
        logger.info(status, archetype_id=archetype.id, results=len(self._results))
        return [r for r in self._results if isinstance(r, TwoLayerResult)]

    async def _run(
        self,
        client: CompletionClient,
        text: str,
        archetype: Archetype,
        credentials: Credentials,
        on_progress: ProgressCallback | None,
        chunking_options: ChunkingOptions,
    ) -> tuple[AnalysisState, str]:
        chunks = self.chunker.create_chunks(text, chunking_options)
        summary = self.chunker.get_chunking_summary(chunks)
        total = len(chunks)
        logger.info(
            f"Starting two-layer analysis for '{archetype.name}' over {total} chunks"
        )

        if total == 0:
            self.state = AnalysisState.COMPLETED
            status = "Nothing to analyze"
            await notify_progress(
                on_progress, self._snapshot(status=status, chunking_summary=summary)
            )
            return AnalysisState.COMPLETED, status

        def progress(step: int, chunk: Chunk, status: str) -> AnalysisProgress:
            return self._snapshot(
                current_step=step,
                total_steps=total,
                current_archetype=archetype.name,
                current_chunk=chunk.index + 1,
                total_chunks=total,
                status=status,
                chunking_summary=summary,
            )

        for position, chunk in enumerate(chunks):
            if self._token.cancelled:
                return (
                    AnalysisState.STOPPED,
                    f"Two-layer analysis stopped after {position}/{total} chunks",
                )

            outcome = TaskOutcome(task=AnalysisTask(archetype, chunk))
            try:
                result = await self._analyze_chunk(
                    client,
                    chunk,
                    archetype,
                    credentials,
                    outcome,
                    lambda stage: notify_progress(
                        on_progress,
                        progress(
                            position,
                            chunk,
                            f"{_STAGE_LABELS[stage]} of chunk {chunk.index + 1}/{total}",
                        ),
                    ),
                )
            except ProgressCallbackError:
                raise
            except Exception as exc:
                self._api_calls += outcome.attempts
                self._usage.add(outcome.usage)
                self._record_failure(outcome.task, exc)
                status = f"Failed chunk {chunk.index + 1}/{total}"
            else:
                self._api_calls += outcome.attempts
                self._usage.add(outcome.usage)
                self._results.append(result)
                status = f"Finished chunk {chunk.index + 1}/{total}"
            await notify_progress(on_progress, progress(position + 1, chunk, status))

            if position < total - 1 and self.chunk_delay > 0:
                await self._token.sleep(self.chunk_delay)

        return (
            AnalysisState.COMPLETED,
            f"Two-layer analysis completed: {len(self._results)}/{total} chunks",
        )

    async def _analyze_chunk(
        self,
        client: CompletionClient,
        chunk: Chunk,
        archetype: Archetype,
        credentials: Credentials,
        outcome: TaskOutcome,
        announce: Callable[[AnalysisMode], Awaitable[None]],
    ) -> TwoLayerResult:
        context: dict[str, object] = {}

        async def stage(mode: AnalysisMode):
            await announce(mode)
            request = self.prompt_builder.build(
                archetype, chunk.content, chunk.index, mode=mode, **context
            )
            response = await self._complete_with_retry(
                client, request, credentials, outcome
            )
            return response.parsed

        raw_reaction: RawReaction = await stage(AnalysisMode.RAW_REACTION)
        context["raw_reaction"] = raw_reaction
        review: AnalyticalReview = await stage(AnalysisMode.BUSINESS_INSIGHT)
        context["analytical_review"] = review
        correlation: LayerCorrelation = await stage(AnalysisMode.LAYER_CORRELATION)
        context.clear()
        basic: ReaderAnalysis = await stage(AnalysisMode.STANDARD)

        return TwoLayerResult(
            archetype_id=archetype.id,
            chunk_index=chunk.index,
            emotional_notes=raw_reaction.notes,
            analytical_review=review,
            layer_correlation=correlation,
            **basic.model_dump(),
        )
