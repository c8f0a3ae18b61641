"""
Run Recorder - persistence of Run records for replay and history views.

A run is written twice: ``create`` before the loop starts and ``update``
once it reaches a terminal state. The StepDriver treats both as best-effort.

File layout of FileRunRecorder:
  {base_path}/{run_id}.json
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any

from agentrun.errors import RunStateError
from agentrun.schemas.run import Lane, Run, RunStatus, TokenUsage
from agentrun.utils.io import atomic_write

logger = logging.getLogger(__name__)


class RunRecorder(ABC):
    """Base class for run stores."""

    @abstractmethod
    async def create(self, run: Run) -> str:
        """Persist a new running Run and return its id."""

    @abstractmethod
    async def get(self, run_id: str) -> Run | None:
        ...

    @abstractmethod
    async def list_runs(
        self,
        session_id: str | None = None,
        lane: Lane | None = None,
        limit: int = 50,
    ) -> list[Run]:
        """Runs newest first, optionally filtered."""

    @abstractmethod
    async def _save(self, run: Run) -> None:
        ...

    async def update(
        self,
        run_id: str,
        status: RunStatus,
        output: dict[str, Any] | None = None,
        usage: TokenUsage | None = None,
        error: str | None = None,
        credits_used: int = 0,
        completed_at: datetime | None = None,
    ) -> Run:
        """Move a stored run into its terminal state.

        Raises:
            RunStateError: unknown run, or the run is already terminal
        """
        run = await self.get(run_id)
        if run is None:
            raise RunStateError(f"Unknown run {run_id}")
        run.finish(
            status,
            output=output,
            usage=usage,
            error=error,
            credits_used=credits_used,
            completed_at=completed_at,
        )
        await self._save(run)
        return run


def _filter_runs(
    runs: list[Run],
    session_id: str | None,
    lane: Lane | None,
    limit: int,
) -> list[Run]:
    selected = [
        r
        for r in runs
        if (session_id is None or r.session_id == session_id) and (lane is None or r.lane == lane)
    ]
    selected.sort(key=lambda r: r.started_at, reverse=True)
    return selected[:limit]


class InMemoryRunRecorder(RunRecorder):
    """Keeps copies of runs in a dict. Stored runs are independent of the caller's objects."""

    def __init__(self) -> None:
        self._runs: dict[str, Run] = {}

    async def create(self, run: Run) -> str:
        if run.id in self._runs:
            raise RunStateError(f"Run {run.id} already exists")
        self._runs[run.id] = run.model_copy(deep=True)
        return run.id

    async def get(self, run_id: str) -> Run | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def list_runs(
        self,
        session_id: str | None = None,
        lane: Lane | None = None,
        limit: int = 50,
    ) -> list[Run]:
        runs = [r.model_copy(deep=True) for r in self._runs.values()]
        return _filter_runs(runs, session_id, lane, limit)

    async def _save(self, run: Run) -> None:
        self._runs[run.id] = run.model_copy(deep=True)


class FileRunRecorder(RunRecorder):
    """One JSON file per run, written atomically."""

    def __init__(self, base_path: Path):
        self.base_path = Path(base_path)

    def get_run_path(self, run_id: str) -> Path:
        return self.base_path / f"{run_id}.json"

    async def create(self, run: Run) -> str:
        if await asyncio.to_thread(self.get_run_path(run.id).exists):
            raise RunStateError(f"Run {run.id} already exists")
        await self._save(run)
        return run.id

    async def _save(self, run: Run) -> None:
        def _write():
            with atomic_write(self.get_run_path(run.id)) as f:
                f.write(run.model_dump_json(indent=2))

        await asyncio.to_thread(_write)
        logger.debug(f"Wrote run record {run.id}")

    async def get(self, run_id: str) -> Run | None:
        def _read():
            path = self.get_run_path(run_id)
            if not path.exists():
                return None
            return Run.model_validate_json(path.read_text(encoding="utf-8"))

        return await asyncio.to_thread(_read)

    async def list_runs(
        self,
        session_id: str | None = None,
        lane: Lane | None = None,
        limit: int = 50,
    ) -> list[Run]:
        def _scan():
            runs = []
            if not self.base_path.exists():
                return runs
            for path in self.base_path.glob("*.json"):
                try:
                    runs.append(Run.model_validate_json(path.read_text(encoding="utf-8")))
                except (OSError, ValueError) as e:
                    logger.warning(f"Skipping unreadable run file {path.name}: {e}")
            return runs

        runs = await asyncio.to_thread(_scan)
        return _filter_runs(runs, session_id, lane, limit)
