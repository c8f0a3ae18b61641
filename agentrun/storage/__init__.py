"""Run persistence."""

from agentrun.storage.run_recorder import FileRunRecorder, InMemoryRunRecorder, RunRecorder

__all__ = ["FileRunRecorder", "InMemoryRunRecorder", "RunRecorder"]
