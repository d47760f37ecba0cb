from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Iterator, List, Optional

from faceauth.face.head_pose import HeadPose
from faceauth.face.types import Detection


@dataclass(frozen=True, eq=False)
class FrameRecord:
    frame: Any
    detection: Optional[Detection]
    pose: Optional[HeadPose]
    timestamp: float


class FrameHistory:
    """Rolling window of the most recent frames, oldest evicted first.

    Owned by exactly one verification session; `clear()` releases the frames.
    """

    def __init__(self, capacity: int):
        if int(capacity) < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = int(capacity)
        self._records: Deque[FrameRecord] = deque(maxlen=self.capacity)

    def append(self, record: FrameRecord) -> None:
        self._records.append(record)

    def clear(self) -> None:
        self._records.clear()

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[FrameRecord]:
        return iter(list(self._records))

    def records(self) -> List[FrameRecord]:
        return list(self._records)

    def latest(self) -> Optional[FrameRecord]:
        return self._records[-1] if self._records else None
