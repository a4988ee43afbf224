# services/lobby_monitor/frame_store.py
from __future__ import annotations
from collections import deque
from pathlib import Path
from typing import Deque, List, Optional

from common.logging import get_logger
from common.schemas import AnalyzedFrame

log = get_logger("frame_store")

class FrameStore:
    """
    Bounded ring of analyzed frames, most recent first.
    Dropping a record (eviction or clear) also deletes its captured JPEG.
    """

    def __init__(self, max_frames: int = 10):
        if max_frames < 1:
            raise ValueError("max_frames must be >= 1")
        self._max = max_frames
        self._frames: Deque[AnalyzedFrame] = deque()

    @property
    def max_frames(self) -> int:
        return self._max

    def __len__(self) -> int:
        return len(self._frames)

    def push(self, record: AnalyzedFrame) -> Optional[AnalyzedFrame]:
        """Insert at the front; returns the evicted record, if any."""
        if any(f.id == record.id for f in self._frames):
            raise ValueError(f"Duplicate frame id {record.id}")
        self._frames.appendleft(record)
        if len(self._frames) <= self._max:
            return None
        evicted = self._frames.pop()
        self._unlink(evicted)
        log.info(f"[evicted] frame={evicted.id} file={evicted.filename} size={len(self._frames)}/{self._max}")
        return evicted

    def list(self) -> List[AnalyzedFrame]:
        return list(self._frames)

    def get(self, frame_id: int) -> Optional[AnalyzedFrame]:
        return next((f for f in self._frames if f.id == frame_id), None)

    def clear(self) -> int:
        n = len(self._frames)
        while self._frames:
            self._unlink(self._frames.pop())
        if n:
            log.info(f"Cleared {n} analyzed frame(s)")
        return n

    @staticmethod
    def _unlink(record: AnalyzedFrame) -> None:
        try:
            Path(record.file_path).unlink(missing_ok=True)
        except OSError as e:
            log.warning(f"Could not delete {record.file_path}: {e}")
