# storage/job_store.py
"""Durable snapshots of background jobs."""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from typing import Protocol

import structlog
from config import JOB_STORE_PATH
from pydantic import ValidationError

from models import BackgroundJob

logger = structlog.get_logger(__name__)


class JobStore(Protocol):
    """Persistence port used by ``BackgroundJobManager``."""

    async def save(self, job: BackgroundJob) -> None: ...

    async def load_all(self) -> list[BackgroundJob]: ...

    async def delete(self, job_id: str) -> None: ...


class InMemoryJobStore:
    """Keeps serialized snapshots in a dict. Useful for tests and one-shot runs."""

    def __init__(self) -> None:
        self.saved: dict[str, str] = {}
        self.save_count = 0

    async def save(self, job: BackgroundJob) -> None:
        self.saved[job.id] = job.model_dump_json(by_alias=True)
        self.save_count += 1

    async def load_all(self) -> list[BackgroundJob]:
        return [BackgroundJob.model_validate_json(raw) for raw in self.saved.values()]

    async def delete(self, job_id: str) -> None:
        self.saved.pop(job_id, None)


class JsonFileJobStore:
    """One ``job_<id>.json`` file per job, replaced atomically on every save."""

    def __init__(self, directory: str = JOB_STORE_PATH) -> None:
        self.directory = directory
        os.makedirs(self.directory, exist_ok=True)

    def _path_for(self, job_id: str) -> str:
        safe_id = "".join(c if c.isalnum() or c in ["_", "-"] else "_" for c in job_id)
        return os.path.join(self.directory, f"job_{safe_id}.json")

    async def save(self, job: BackgroundJob) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None, self._save_sync, job.id, job.model_dump_json(by_alias=True, indent=2)
        )

    def _save_sync(self, job_id: str, data: str) -> None:
        path = self._path_for(job_id)
        fd, tmp_path = tempfile.mkstemp(
            dir=self.directory, prefix=".job_", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(data)
            os.replace(tmp_path, path)
        except OSError:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    async def load_all(self) -> list[BackgroundJob]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._load_all_sync)

    def _load_all_sync(self) -> list[BackgroundJob]:
        jobs: list[BackgroundJob] = []
        for name in sorted(os.listdir(self.directory)):
            if not (name.startswith("job_") and name.endswith(".json")):
                continue
            path = os.path.join(self.directory, name)
            try:
                with open(path, encoding="utf-8") as f:
                    jobs.append(BackgroundJob.model_validate(json.load(f)))
            except (OSError, json.JSONDecodeError, ValidationError) as exc:
                logger.warning(
                    "Skipping unreadable job snapshot", path=path, error=str(exc)
                )
        return jobs

    async def delete(self, job_id: str) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._delete_sync, job_id)

    def _delete_sync(self, job_id: str) -> None:
        path = self._path_for(job_id)
        if os.path.exists(path):
            os.remove(path)
