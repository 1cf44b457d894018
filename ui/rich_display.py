# ui/rich_display.py
from __future__ import annotations

import asyncio
import time

from config import settings
from rich.console import Group
from rich.live import Live
from rich.panel import Panel
from rich.text import Text

from models import AnalysisProgress, BackgroundJob


class RichDisplayManager:
    """Renders analysis progress snapshots in a live terminal panel."""

    def __init__(self, title: str = "Reader Panel Analysis") -> None:
        self.live: Live | None = None
        self.group: Group | None = None
        self.status_text_step: Text = Text("Progress: 0/0 (0.0%)")
        self.status_text_current: Text = Text("Current: N/A")
        self.status_text_status: Text = Text("Status: Initializing...")
        self.status_text_results: Text = Text("Results: 0 | Failures: 0")
        self.status_text_usage: Text = Text("API Calls: 0 | Tokens: 0 prompt / 0 completion")
        self.status_text_chunking: Text = Text("Chunking: N/A")
        self.status_text_elapsed_time: Text = Text("Elapsed Time: 0s")
        self.run_start_time: float = 0.0
        self._stop_event: asyncio.Event = asyncio.Event()
        self._task: asyncio.Task | None = None

        if settings.ENABLE_RICH_PROGRESS:
            self.group = Group(
                self.status_text_step,
                self.status_text_current,
                self.status_text_status,
                self.status_text_results,
                self.status_text_usage,
                self.status_text_chunking,
                self.status_text_elapsed_time,
            )
            self.live = Live(
                Panel(self.group, title=title, border_style="blue", expand=True),
                refresh_per_second=4,
                transient=False,
                redirect_stdout=False,
                redirect_stderr=False,
            )

    def start(self) -> None:
        self.run_start_time = time.time()
        if self.live:
            self.live.start()
            self._stop_event.clear()
            self._task = asyncio.create_task(self._auto_refresh())

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task:
            await self._task
            self._task = None
        if self.live and self.live.is_started:
            self.live.stop()

    async def _auto_refresh(self) -> None:
        while not self._stop_event.is_set():
            self._refresh_elapsed()
            await asyncio.sleep(1)

    def _refresh_elapsed(self) -> None:
        elapsed_seconds = time.time() - self.run_start_time if self.run_start_time else 0.0
        self.status_text_elapsed_time.plain = (
            f"Elapsed Time: {time.strftime('%H:%M:%S', time.gmtime(elapsed_seconds))}"
        )

    def update(self, snapshot: AnalysisProgress) -> None:
        """Progress callback: render one snapshot."""
        self.status_text_step.plain = (
            f"Progress: {snapshot.current_step}/{snapshot.total_steps} "
            f"({snapshot.percent:.1f}%)"
        )
        if snapshot.current_archetype:
            self.status_text_current.plain = (
                f"Current: {snapshot.current_archetype}, chunk "
                f"{snapshot.current_chunk}/{snapshot.total_chunks}"
            )
        self.status_text_status.plain = f"Status: {snapshot.status}"
        self.status_text_results.plain = (
            f"Results: {len(snapshot.results)} | Failures: {len(snapshot.failures)}"
        )
        self.status_text_usage.plain = (
            f"API Calls: {snapshot.api_calls} | Tokens: "
            f"{snapshot.token_usage.prompt:,} prompt / "
            f"{snapshot.token_usage.completion:,} completion"
        )
        if snapshot.chunking_summary:
            self.status_text_chunking.plain = f"Chunking: {snapshot.chunking_summary}"
        self._refresh_elapsed()

    def update_job(self, job: BackgroundJob) -> None:
        """Render a background job snapshot."""
        self.status_text_step.plain = (
            f"Progress: {job.completed_steps}/{job.total_steps} ({job.progress:.1f}%)"
        )
        self.status_text_current.plain = f"Job: {job.id} [{job.status.value}]"
        self.status_text_status.plain = f"Status: {job.error or job.current_step}"
        self.status_text_results.plain = f"Results: {len(job.results)}"
        self._refresh_elapsed()
