import asyncio

import pytest
from core.exceptions import AnalysisAlreadyRunningError, ApiError, ParseError, TransportError
from orchestration.analysis_controller import (
    AnalysisController,
    AnalysisState,
    build_task_matrix,
    sort_results,
    summarize_results,
)
from orchestration.cancellation import CancellationToken
from processing.prompt_builder import AnalysisMode
from processing.text_chunking import TextChunker

from conftest import FakeCompletionClient, describe_request, make_text, standard_payload
from models import AnalysisResult, Archetype, ChunkingOptions

OPTIONS = ChunkingOptions(max_words_per_chunk=400, min_words_per_chunk=150)
THOUSAND_WORDS = make_text(10, 100)


def _controller(client, **kwargs) -> AnalysisController:
    kwargs.setdefault("batch_delay", 0)
    kwargs.setdefault("retry_delay", 0)
    return AnalysisController(client=client, **kwargs)


@pytest.mark.asyncio
async def test_thousand_words_two_archetypes(archetypes, credentials):
    client = FakeCompletionClient()
    controller = _controller(client)
    snapshots = []

    results = await controller.run_analysis(
        THOUSAND_WORDS, archetypes, credentials, snapshots.append, OPTIONS
    )

    assert len(results) == 6
    assert [s.current_step for s in snapshots] == [1, 2, 3, 4, 5, 6]
    assert all(s.total_steps == 6 for s in snapshots)
    assert snapshots[-1].api_calls == 6
    assert snapshots[-1].percent == 100.0
    assert snapshots[-1].token_usage.prompt == 60
    assert snapshots[-1].token_usage.completion == 30
    assert snapshots[0].chunking_summary.startswith("Text split into 3 chunks")
    assert [(r.archetype_id, r.chunk_index) for r in results] == [
        ("a1", 0), ("a1", 1), ("a1", 2), ("b2", 0), ("b2", 1), ("b2", 2),
    ]
    assert controller.state == AnalysisState.COMPLETED
    assert "completed" in controller.last_progress.status.lower()
    assert not client.closed


@pytest.mark.asyncio
async def test_snapshots_are_point_in_time_copies(archetypes, credentials):
    snapshots = []
    await _controller(FakeCompletionClient()).run_analysis(
        THOUSAND_WORDS, archetypes, credentials, snapshots.append, OPTIONS
    )
    assert [len(s.results) for s in snapshots] == [1, 2, 3, 4, 5, 6]
    assert snapshots[0].current_archetype == "Alice"
    assert snapshots[0].current_chunk == 1
    assert snapshots[3].current_archetype == "Bob"
    assert snapshots[3].total_chunks == 3


@pytest.mark.asyncio
async def test_results_serialize_with_camel_case(archetypes, credentials):
    results = await _controller(FakeCompletionClient()).run_analysis(
        THOUSAND_WORDS, archetypes[:1], credentials, chunking_options=OPTIONS
    )
    data = results[0].to_json_dict()
    assert data["archetypeId"] == "a1"
    assert data["chunkIndex"] == 0
    assert data["overallRating"] == 7.0
    assert data["expectedReviewSentiment"] == "positive"


@pytest.mark.asyncio
async def test_partial_failure_does_not_abort_run(archetypes, credentials):
    def responder(request):
        if describe_request(request) == ("Bob", 2):
            raise ApiError(400, '{"error": "bad request"}')
        return standard_payload()

    snapshots = []
    controller = _controller(FakeCompletionClient(responder))
    results = await controller.run_analysis(
        THOUSAND_WORDS, archetypes, credentials, snapshots.append, OPTIONS
    )

    assert len(results) == 5
    assert ("b2", 1) not in [(r.archetype_id, r.chunk_index) for r in results]
    assert len(snapshots) == 6
    failures = snapshots[-1].failures
    assert len(failures) == 1
    assert failures[0].archetype_id == "b2"
    assert failures[0].chunk_index == 1
    assert failures[0].error_type == "ApiError"
    assert "bad request" in failures[0].message
    assert snapshots[4].status.startswith("Failed")
    assert controller.state == AnalysisState.COMPLETED


@pytest.mark.asyncio
async def test_every_task_failing_still_completes(archetypes, credentials):
    def responder(_request):
        raise ParseError("no JSON")

    snapshots = []
    results = await _controller(FakeCompletionClient(responder)).run_analysis(
        THOUSAND_WORDS, archetypes, credentials, snapshots.append, OPTIONS
    )
    assert results == []
    assert len(snapshots) == 6
    assert len(snapshots[-1].failures) == 6
    assert snapshots[-1].api_calls == 6


@pytest.mark.asyncio
async def test_incomplete_payload_is_a_task_failure(archetypes, credentials):
    def responder(request):
        payload = standard_payload()
        if describe_request(request)[1] == 1:
            del payload["overallRating"]
        return payload

    snapshots = []
    results = await _controller(FakeCompletionClient(responder)).run_analysis(
        THOUSAND_WORDS, archetypes, credentials, snapshots.append, OPTIONS
    )
    assert len(results) == 4
    assert {f.error_type for f in snapshots[-1].failures} == {"IncompleteResponse"}


@pytest.mark.asyncio
async def test_transient_failures_are_retried(archetypes, credentials):
    attempts = {"count": 0}

    def responder(request):
        if describe_request(request) == ("Alice", 1):
            attempts["count"] += 1
            if attempts["count"] == 1:
                raise ApiError(503, "upstream unavailable")
            if attempts["count"] == 2:
                raise TransportError("connection reset")
        return standard_payload()

    snapshots = []
    results = await _controller(FakeCompletionClient(responder)).run_analysis(
        THOUSAND_WORDS, archetypes, credentials, snapshots.append, OPTIONS
    )
    assert len(results) == 6
    assert attempts["count"] == 3
    assert snapshots[-1].api_calls == 8


@pytest.mark.asyncio
async def test_retries_are_bounded(archetypes, credentials):
    def responder(request):
        if describe_request(request) == ("Alice", 1):
            raise ApiError(500, "boom")
        return standard_payload()

    client = FakeCompletionClient(responder)
    snapshots = []
    results = await _controller(client, retry_attempts=3).run_analysis(
        THOUSAND_WORDS, archetypes, credentials, snapshots.append, OPTIONS
    )
    assert len(results) == 5
    assert len(client.requests) == 8
    assert snapshots[-1].api_calls == 8


@pytest.mark.asyncio
async def test_permanent_failures_are_not_retried(archetypes, credentials):
    def responder(request):
        if describe_request(request) == ("Alice", 1):
            raise ApiError(401, "invalid key")
        return standard_payload()

    client = FakeCompletionClient(responder)
    await _controller(client).run_analysis(
        THOUSAND_WORDS, archetypes, credentials, chunking_options=OPTIONS
    )
    assert len(client.requests) == 6


@pytest.mark.asyncio
async def test_stop_takes_effect_at_batch_boundary(archetypes, credentials):
    client = FakeCompletionClient()
    controller = _controller(client, batch_size=2)

    def on_progress(snapshot):
        if snapshot.current_step == 1:
            controller.stop()

    results = await controller.run_analysis(
        THOUSAND_WORDS, archetypes, credentials, on_progress, OPTIONS
    )

    # the batch in flight when stop() was called still finishes
    assert len(client.requests) == 2
    assert len(results) == 2
    assert controller.state == AnalysisState.STOPPED


@pytest.mark.asyncio
async def test_cancelled_owner_token_prevents_any_request(archetypes, credentials):
    client = FakeCompletionClient()
    controller = _controller(client)
    token = CancellationToken()
    token.cancel("owner stopped")

    results = await controller.run_analysis(
        THOUSAND_WORDS, archetypes, credentials, chunking_options=OPTIONS, cancel_token=token
    )

    assert results == []
    assert client.requests == []
    assert controller.state == AnalysisState.STOPPED
    assert controller.last_progress.status == "Analysis stopped after 0/6 tasks"
    assert "stopped" in controller.last_progress.status.lower()
    assert controller.last_progress.state == "stopped"


@pytest.mark.asyncio
async def test_stop_interrupts_inter_batch_delay(archetypes, credentials):
    client = FakeCompletionClient()
    controller = _controller(client, batch_size=3, batch_delay=30)

    def on_progress(snapshot):
        if snapshot.current_step == 3:
            controller.stop()

    results = await asyncio.wait_for(
        controller.run_analysis(THOUSAND_WORDS, archetypes, credentials, on_progress, OPTIONS),
        timeout=5,
    )
    assert len(results) == 3
    assert len(client.requests) == 3


@pytest.mark.asyncio
async def test_stop_from_another_task_mid_batch(archetypes, credentials):
    client = FakeCompletionClient(delay=0.05)
    controller = _controller(client, batch_size=2)

    run = asyncio.create_task(
        controller.run_analysis(THOUSAND_WORDS, archetypes, credentials, chunking_options=OPTIONS)
    )
    await asyncio.sleep(0.01)
    controller.stop()
    results = await run

    assert len(client.requests) == 2
    assert len(results) == 2
    assert controller.state == AnalysisState.STOPPED


@pytest.mark.asyncio
async def test_zero_archetypes_completes_immediately(credentials):
    snapshots = []
    controller = _controller(FakeCompletionClient())
    results = await controller.run_analysis(THOUSAND_WORDS, [], credentials, snapshots.append)

    assert results == []
    assert len(snapshots) == 1
    assert snapshots[0].total_steps == 0
    assert snapshots[0].percent == 100.0
    assert snapshots[0].state == "completed"
    assert controller.state == AnalysisState.COMPLETED


@pytest.mark.asyncio
async def test_blank_text_completes_immediately(archetypes, credentials):
    snapshots = []
    client = FakeCompletionClient()
    results = await _controller(client).run_analysis("   ", archetypes, credentials, snapshots.append)
    assert results == []
    assert [s.total_steps for s in snapshots] == [0]
    assert client.requests == []


@pytest.mark.asyncio
async def test_second_start_while_running_is_rejected(archetypes, credentials):
    controller = _controller(FakeCompletionClient(delay=0.05))
    first = asyncio.create_task(
        controller.run_analysis(THOUSAND_WORDS, archetypes, credentials, chunking_options=OPTIONS)
    )
    await asyncio.sleep(0)
    assert controller.is_running

    with pytest.raises(AnalysisAlreadyRunningError):
        await controller.run_analysis(THOUSAND_WORDS, archetypes, credentials)

    assert len(await first) == 6
    assert not controller.is_running


@pytest.mark.asyncio
async def test_controller_can_run_again_after_completion(archetypes, credentials):
    controller = _controller(FakeCompletionClient())
    await controller.run_analysis(THOUSAND_WORDS, archetypes, credentials, chunking_options=OPTIONS)
    results = await controller.run_analysis(
        THOUSAND_WORDS, archetypes[:1], credentials, chunking_options=OPTIONS
    )
    assert len(results) == 3
    assert controller.last_progress.api_calls == 3


@pytest.mark.asyncio
async def test_async_progress_callback_is_awaited(archetypes, credentials):
    seen = []

    async def on_progress(snapshot):
        await asyncio.sleep(0)
        seen.append(snapshot.current_step)

    await _controller(FakeCompletionClient()).run_analysis(
        THOUSAND_WORDS, archetypes, credentials, on_progress, OPTIONS
    )
    assert seen == [1, 2, 3, 4, 5, 6]


@pytest.mark.asyncio
async def test_internal_error_returns_partial_results(archetypes, credentials):
    controller = _controller(FakeCompletionClient())

    def on_progress(snapshot):
        if snapshot.current_step == 3:
            raise RuntimeError("display crashed")

    results = await controller.run_analysis(
        THOUSAND_WORDS, archetypes, credentials, on_progress, OPTIONS
    )
    assert len(results) == 3
    assert controller.state == AnalysisState.FAILED
    assert controller.last_progress.status == "Analysis failed: display crashed"


@pytest.mark.asyncio
async def test_dependent_mode_cannot_run_standalone(archetypes, credentials):
    controller = _controller(FakeCompletionClient())
    with pytest.raises(ValueError):
        await controller.run_analysis(
            THOUSAND_WORDS, archetypes, credentials, mode=AnalysisMode.BUSINESS_INSIGHT
        )
    assert controller.state == AnalysisState.IDLE


@pytest.mark.asyncio
async def test_concurrency_bounded_by_batch_size(archetypes, credentials):
    in_flight = {"now": 0, "max": 0}

    class TrackingClient(FakeCompletionClient):
        async def complete_request(self, request, credentials, model_id=None):
            in_flight["now"] += 1
            in_flight["max"] = max(in_flight["max"], in_flight["now"])
            try:
                await asyncio.sleep(0.01)
                return await super().complete_request(request, credentials, model_id)
            finally:
                in_flight["now"] -= 1

    results = await _controller(TrackingClient(), batch_size=4).run_analysis(
        THOUSAND_WORDS, archetypes, credentials, chunking_options=OPTIONS
    )
    assert len(results) == 6
    assert in_flight["max"] == 4


def test_build_task_matrix_is_archetype_major(archetypes):
    chunks = TextChunker.create_chunks(THOUSAND_WORDS, OPTIONS)
    tasks = build_task_matrix(archetypes, chunks)
    assert [(t.archetype.id, t.chunk_index) for t in tasks] == [
        ("a1", 0), ("a1", 1), ("a1", 2), ("b2", 0), ("b2", 1), ("b2", 2),
    ]
    assert build_task_matrix([], chunks) == []
    assert build_task_matrix(archetypes, []) == []


def test_sort_results_restores_document_order():
    def result(archetype_id, chunk_index):
        return AnalysisResult.model_validate(
            {"archetypeId": archetype_id, "chunkIndex": chunk_index, **standard_payload()}
        )

    shuffled = [result("b2", 1), result("a1", 1), result("b2", 0), result("a1", 0)]
    ordered = sort_results(shuffled, ["a1", "b2"])
    assert [(r.archetype_id, r.chunk_index) for r in ordered] == [
        ("a1", 0), ("b2", 0), ("a1", 1), ("b2", 1),
    ]


def _verdict(archetype_id, chunk_index, overall, buying, sentiment, insights):
    payload = standard_payload(overall)
    payload.update(
        buyingProbability=buying,
        expectedReviewSentiment=sentiment,
        marketingInsights=insights,
    )
    return AnalysisResult.model_validate(
        {"archetypeId": archetype_id, "chunkIndex": chunk_index, **payload}
    )


def test_summarize_results_per_archetype_and_panel(archetypes):
    silent = Archetype(id="c3", name="Cleo")
    results = [
        _verdict("a1", 1, 8.5, 0.8, "positive", ["Target book clubs", "Lead with the twist"]),
        _verdict("b2", 0, 5.5, 0.3, "negative", ["Target book clubs", "Trim the prologue"]),
        _verdict("a1", 0, 6.5, 0.5, "neutral", ["Lead with the twist", "Target book clubs"]),
    ]

    summary = summarize_results(results, [*archetypes, silent])

    assert summary.total_archetypes == 3
    assert summary.total_analyzed_chunks == 3
    alice, bob, cleo = summary.archetypes
    assert alice.archetype_name == "Alice"
    assert alice.analyzed_chunks == 2
    assert alice.avg_overall == 7.5
    assert alice.avg_buying_probability == 0.65
    assert alice.final_rating == 8.5  # chunk 1 is the last in document order
    assert alice.final_buying_probability == 0.8
    assert alice.review_sentiment == "positive"
    assert (alice.positive_reviews, alice.neutral_reviews, alice.negative_reviews) == (1, 1, 0)
    assert bob.negative_reviews == 1
    assert cleo.analyzed_chunks == 0
    assert cleo.avg_overall is None and cleo.final_rating is None
    # Cleo has no verdict, so the panel means cover Alice and Bob only.
    assert summary.overall_rating == 7.0
    assert summary.overall_buying_probability == 0.55
    assert [(i.insight, i.count) for i in summary.top_insights] == [
        ("Target book clubs", 3),
        ("Lead with the twist", 2),
        ("Trim the prologue", 1),
    ]


def test_summarize_results_caps_top_insights(archetypes):
    results = [
        _verdict("a1", 0, 7.0, 0.5, "positive", ["one", "two", "three"]),
        _verdict("b2", 0, 7.0, 0.5, "positive", ["three", "four"]),
    ]
    summary = summarize_results(results, archetypes, top_insights=2)
    assert [i.insight for i in summary.top_insights] == ["three", "one"]


def test_summarize_results_empty_run(archetypes):
    summary = summarize_results([], archetypes)
    assert summary.total_analyzed_chunks == 0
    assert summary.overall_rating is None
    assert summary.top_insights == []
    assert summary.to_json_dict()["archetypes"][0]["archetypeId"] == "a1"
