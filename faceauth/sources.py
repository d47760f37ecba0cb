"""Frame sources.

The engine pulls frames on demand and never owns the camera: a source returns
the latest frame it has, or None when nothing is available right now. `read`
must never block indefinitely.
"""

from __future__ import annotations

import threading
import time

from abc import ABC, abstractmethod
from typing import Iterable, Iterator, Optional, Union

import cv2
import numpy as np

from faceauth.utils.log import get_logger

logger = get_logger(__name__)


class FrameSource(ABC):
    @abstractmethod
    def read(self):
        """Latest frame, or None when no frame is available."""
        pass

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


class IterableFrameSource(FrameSource):
    """Frames from any iterable; returns None once exhausted (or cycles when `repeat`)."""

    def __init__(self, frames: Iterable, repeat: bool = False):
        self._items = list(frames) if repeat else None
        self._it: Iterator = iter(self._items if repeat else frames)
        self.repeat = bool(repeat)
        self.exhausted = False
        self.frames_read = 0

    def read(self):
        if self.exhausted:
            return None
        try:
            frame = next(self._it)
        except StopIteration:
            if self.repeat and self._items:
                self._it = iter(self._items)
                frame = next(self._it)
            else:
                self.exhausted = True
                return None
        self.frames_read += 1
        return frame


class CameraFrameSource(FrameSource):
    """OpenCV capture with a grabber thread that keeps only the newest frame.

    Example:
        >>> with CameraFrameSource(0) as cam:
        ...     frame = cam.read()
    """

    def __init__(
        self,
        device: Union[int, str] = 0,
        width: Optional[int] = None,
        height: Optional[int] = None,
        open_timeout: float = 5.0,
    ):
        self.device = device
        self._cap = cv2.VideoCapture(device)
        if not self._cap.isOpened():
            raise RuntimeError(f"Could not open camera {device!r}")
        if width:
            self._cap.set(cv2.CAP_PROP_FRAME_WIDTH, int(width))
        if height:
            self._cap.set(cv2.CAP_PROP_FRAME_HEIGHT, int(height))

        self.width = int(self._cap.get(cv2.CAP_PROP_FRAME_WIDTH))
        self.height = int(self._cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
        self.fps = float(self._cap.get(cv2.CAP_PROP_FPS))

        self._latest: Optional[np.ndarray] = None
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._first_frame = threading.Event()
        self._thread = threading.Thread(target=self._grab_loop, name="camera-grabber", daemon=True)
        self._thread.start()

        if not self._first_frame.wait(open_timeout):
            logger.warning(f"No frame from camera {device!r} within {open_timeout:.1f}s")
        logger.info(f"Camera {device!r} opened ({self.width}x{self.height} @ {self.fps:.1f} fps)")

    def _grab_loop(self) -> None:
        failures = 0
        while not self._stop.is_set():
            ok, frame = self._cap.read()
            if not ok or frame is None:
                failures += 1
                if failures % 50 == 1:
                    logger.warning(f"Camera {self.device!r} read failed ({failures} consecutive)")
                time.sleep(0.02)
                continue
            failures = 0
            with self._lock:
                self._latest = frame
            self._first_frame.set()

    def read(self) -> Optional[np.ndarray]:
        with self._lock:
            return None if self._latest is None else self._latest.copy()

    def close(self) -> None:
        if self._stop.is_set():
            return
        self._stop.set()
        self._thread.join(timeout=2.0)
        self._cap.release()
        logger.info(f"Camera {self.device!r} released")
