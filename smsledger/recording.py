"""Voice-entry capture guard.

The platform allows only one prepared recording at a time; starting a second
one is a hard error. RecordingGuard serializes start/stop with a boolean
mutex: an overlapping start (or a stop while a start/stop is still in flight)
is rejected with RecordingBusyError instead of reaching the recorder.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

from smsledger.errors import RecordingBusyError

logger = logging.getLogger(__name__)


class Recorder(ABC):

    @abstractmethod
    async def start(self) -> Any:
        """Begin capture and return a recording handle."""
        ...

    @abstractmethod
    async def stop(self, handle: Any) -> str:
        """Stop and unload the recording; return the audio file URI."""
        ...


class RecordingGuard:

    def __init__(self, recorder: Recorder):
        self.recorder = recorder
        self._busy = False  # a start/stop transition is in flight
        self._active: Any = None

    @property
    def is_recording(self) -> bool:
        return self._active is not None

    async def start(self) -> Any:
        if self._busy or self._active is not None:
            raise RecordingBusyError("A recording is already in progress")
        self._busy = True
        try:
            self._active = await self.recorder.start()
            logger.info("Voice capture started")
            return self._active
        finally:
            self._busy = False

    async def stop(self) -> Optional[str]:
        """Stop the active capture. No-op (None) when nothing is recording."""
        if self._busy:
            raise RecordingBusyError("Recording start/stop already in progress")
        if self._active is None:
            return None
        self._busy = True
        handle, self._active = self._active, None
        try:
            uri = await self.recorder.stop(handle)
            logger.info("Voice capture stopped: %s", uri)
            return uri
        finally:
            self._busy = False
