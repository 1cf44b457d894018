# orchestration/cli_runner.py
"""Command-line runner for reader panel analyses."""

from __future__ import annotations

import argparse
import asyncio
import json
import os
from typing import Any

import structlog
from config import RESULTS_FILE_PATH, JOB_STORE_PATH, settings
from core.exceptions import ReaderPanelError
from core.llm_interface import CompletionClient
from ingestion.manuscript_loader import load_manuscript
from ui.rich_display import RichDisplayManager
from utils.logging import setup_logging
from yaml_parser import default_archetypes, load_archetypes

from models import AnalysisResult, Archetype, Credentials, JobStatus, PanelSummary
from orchestration.analysis_controller import (
    AnalysisController,
    sort_results,
    summarize_results,
)
from orchestration.job_manager import (
    READER_ANALYSIS_JOB,
    TWO_LAYER_ANALYSIS_JOB,
    BackgroundJobManager,
    make_reader_analysis_handler,
    make_two_layer_handler,
)
from orchestration.two_layer_controller import TwoLayerAnalysisController
from storage.job_store import JsonFileJobStore

logger = structlog.get_logger(__name__)

MODE_STANDARD = "standard"
MODE_TWO_LAYER = "two_layer"


def _select_archetypes(args: argparse.Namespace) -> list[Archetype]:
    archetypes = (
        load_archetypes(args.archetypes) if args.archetypes else default_archetypes()
    )
    if args.archetype_id:
        archetypes = [a for a in archetypes if a.id == args.archetype_id]
        if not archetypes:
            raise ReaderPanelError(f"No archetype with id '{args.archetype_id}'")
    if args.mode == MODE_TWO_LAYER:
        archetypes = archetypes[:1]
    return archetypes


def _credentials(args: argparse.Namespace) -> Credentials:
    if not settings.OPENAI_API_KEY:
        raise ReaderPanelError("OPENAI_API_KEY is not set (environment or .env)")
    return Credentials(
        api_key=settings.OPENAI_API_KEY,
        model=args.model or settings.DEFAULT_MODEL,
        api_base=settings.OPENAI_API_BASE,
    )


def write_results(results: list[dict[str, Any]], output_path: str) -> None:
    directory = os.path.dirname(output_path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(results, f, ensure_ascii=False, indent=2)
    logger.info(f"Wrote {len(results)} results to {output_path}")


def summary_path_for(output_path: str) -> str:
    root, ext = os.path.splitext(output_path)
    return f"{root}_summary{ext or '.json'}"


def write_summary(summary: PanelSummary, output_path: str) -> None:
    """Write the panel summary beside the results file."""
    path = summary_path_for(output_path)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(summary.to_json_dict(), f, ensure_ascii=False, indent=2)
    logger.info(
        f"Wrote summary of {summary.total_analyzed_chunks} verdicts to {path}"
    )


async def _run_in_background(
    client: CompletionClient,
    credentials: Credentials,
    payload: dict[str, Any],
    job_type: str,
    display: RichDisplayManager,
) -> list[dict[str, Any]]:
    manager = BackgroundJobManager(store=JsonFileJobStore(JOB_STORE_PATH))
    manager.register_job_handler(
        READER_ANALYSIS_JOB,
        make_reader_analysis_handler(
            credentials, controller_factory=lambda: AnalysisController(client=client)
        ),
    )
    manager.register_job_handler(
        TWO_LAYER_ANALYSIS_JOB,
        make_two_layer_handler(
            credentials,
            controller_factory=lambda: TwoLayerAnalysisController(client=client),
        ),
    )
    restored = await manager.restore_jobs()
    pending = [job.id for job in restored if job.status == JobStatus.PENDING]
    if pending:
        logger.info(
            f"{len(pending)} interrupted job(s) found in {JOB_STORE_PATH}; left pending",
            job_ids=pending,
        )

    job_id = await manager.create_job(job_type, payload)
    try:
        while True:
            job = manager.get_job(job_id)
            if job is None or job.is_finished:
                break
            display.update_job(job)
            await asyncio.sleep(0.5)
        job = await manager.wait_for_job(job_id)
    except asyncio.CancelledError:
        await manager.stop_job(job_id)
        raise
    finally:
        await manager.shutdown()

    if job is None:
        raise ReaderPanelError(f"Job {job_id} disappeared")
    display.update_job(job)
    if job.status == JobStatus.FAILED:
        logger.error("Background job failed", job_id=job_id, error=job.error)
    return list(job.results)


async def _run(args: argparse.Namespace) -> None:
    manuscript = load_manuscript(args.manuscript)
    archetypes = _select_archetypes(args)
    credentials = _credentials(args)
    output_path = args.output or RESULTS_FILE_PATH

    display = RichDisplayManager()
    display.start()
    try:
        async with CompletionClient() as client:
            if args.background:
                if args.mode == MODE_TWO_LAYER:
                    job_type = TWO_LAYER_ANALYSIS_JOB
                    payload: dict[str, Any] = {
                        "text": manuscript.content,
                        "archetype": archetypes[0].to_json_dict(),
                    }
                else:
                    job_type = READER_ANALYSIS_JOB
                    payload = {
                        "text": manuscript.content,
                        "archetypes": [a.to_json_dict() for a in archetypes],
                    }
                results = await _run_in_background(
                    client, credentials, payload, job_type, display
                )
            elif args.mode == MODE_TWO_LAYER:
                two_layer = TwoLayerAnalysisController(client=client)
                layered = await two_layer.run_two_layer_analysis(
                    manuscript.content,
                    archetypes[0],
                    credentials,
                    on_progress=display.update,
                )
                results = [r.to_json_dict() for r in layered]
            else:
                controller = AnalysisController(client=client)
                standard = await controller.run_analysis(
                    manuscript.content,
                    archetypes,
                    credentials,
                    on_progress=display.update,
                )
                results = [
                    r.to_json_dict()
                    for r in sort_results(standard, [a.id for a in archetypes])
                ]
    finally:
        await display.stop()

    write_results(results, output_path)
    panel = archetypes[:1] if args.mode == MODE_TWO_LAYER else archetypes
    summary = summarize_results(
        [AnalysisResult.model_validate(r) for r in results], panel
    )
    write_summary(summary, output_path)


def run(args: argparse.Namespace) -> int:
    """Run the requested analysis. Returns a process exit code."""
    setup_logging()
    try:
        asyncio.run(_run(args))
    except KeyboardInterrupt:
        logger.info("Reader Panel shutting down due to KeyboardInterrupt...")
        return 130
    except ReaderPanelError as err:
        logger.error(f"Reader Panel aborted: {err}")
        return 1
    return 0
