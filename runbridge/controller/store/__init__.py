"""Record store implementations for PipelineRun records and Tekton runs."""

from runbridge.controller.store.base import RecordStore, WatchSource
from runbridge.controller.store.memory import MemoryRecordStore

__all__ = ["MemoryRecordStore", "RecordStore", "WatchSource"]
