"""
Recognize Session

State machine for one listen attempt:

    Idle -> Listening -> Recognizing -> Succeeded | NoMatchFound | Failed

Every transition runs on the event loop thread and is looked up in an
explicit (state, event) table. A generation counter is bumped whenever the
session returns to Idle; capture events, timeouts and recognition results
from an older generation are dropped.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import config
from logging_config import get_logger
from system_utils.helpers import create_tracked_task
from .base import FingerprintClient, SongMetadata, Verdict, create_fingerprint_client
from .capture import AudioCapture, CaptureEvent, RecordedClip
from .errors import (
    AlreadyInProgress,
    AlreadyRecording,
    DeviceError,
    NotRecording,
    RecognizerError,
    RequestError,
    RequestErrorKind,
)

logger = get_logger(__name__)


class SessionStateKind(Enum):
    IDLE = "idle"
    LISTENING = "listening"
    RECOGNIZING = "recognizing"
    SUCCEEDED = "succeeded"
    NO_MATCH_FOUND = "no_match_found"
    FAILED = "failed"


@dataclass(frozen=True)
class SessionState:
    """Immutable snapshot handed to observers. Only the fields of ``kind`` are set."""
    kind: SessionStateKind
    started_at: Optional[datetime] = None
    clip: Optional[RecordedClip] = None
    metadata: Optional[SongMetadata] = None
    error: Optional[RecognizerError] = None

    @classmethod
    def idle(cls) -> 'SessionState':
        return cls(SessionStateKind.IDLE)

    @classmethod
    def listening(cls, started_at: datetime) -> 'SessionState':
        return cls(SessionStateKind.LISTENING, started_at=started_at)

    @classmethod
    def recognizing(cls, clip: RecordedClip) -> 'SessionState':
        return cls(SessionStateKind.RECOGNIZING, clip=clip)

    @classmethod
    def succeeded(cls, metadata: SongMetadata) -> 'SessionState':
        return cls(SessionStateKind.SUCCEEDED, metadata=metadata)

    @classmethod
    def no_match(cls) -> 'SessionState':
        return cls(SessionStateKind.NO_MATCH_FOUND)

    @classmethod
    def failed(cls, error: RecognizerError) -> 'SessionState':
        return cls(SessionStateKind.FAILED, error=error)

    @property
    def is_busy(self) -> bool:
        return self.kind in (SessionStateKind.LISTENING, SessionStateKind.RECOGNIZING)

    @property
    def is_terminal(self) -> bool:
        return self.kind in (
            SessionStateKind.SUCCEEDED,
            SessionStateKind.NO_MATCH_FOUND,
            SessionStateKind.FAILED,
        )


class SessionEvent(Enum):
    LISTEN = "listen"
    STOP = "stop"
    TIMEOUT = "timeout"
    END_OF_STREAM = "end_of_stream"
    CANCEL = "cancel"
    ACKNOWLEDGE = "acknowledge"
    CAPTURE_FAILED = "capture_failed"
    MATCH = "match"
    NO_MATCH = "no_match"
    REQUEST_FAILED = "request_failed"


_IDLE = SessionStateKind.IDLE
_LISTENING = SessionStateKind.LISTENING
_RECOGNIZING = SessionStateKind.RECOGNIZING
_TERMINAL = (SessionStateKind.SUCCEEDED, SessionStateKind.NO_MATCH_FOUND, SessionStateKind.FAILED)

# (state kind, event) -> handler method name. Pairs not listed are ignored.
TRANSITIONS: Dict[Tuple[SessionStateKind, SessionEvent], str] = {
    (_IDLE, SessionEvent.LISTEN): "_start_listening",
    (_LISTENING, SessionEvent.STOP): "_finish_listening",
    (_LISTENING, SessionEvent.TIMEOUT): "_finish_listening",
    (_LISTENING, SessionEvent.END_OF_STREAM): "_finish_listening",
    (_LISTENING, SessionEvent.CANCEL): "_abort_listening",
    (_LISTENING, SessionEvent.CAPTURE_FAILED): "_capture_failed",
    (_RECOGNIZING, SessionEvent.MATCH): "_matched",
    (_RECOGNIZING, SessionEvent.NO_MATCH): "_not_matched",
    (_RECOGNIZING, SessionEvent.REQUEST_FAILED): "_request_failed",
    (_RECOGNIZING, SessionEvent.CANCEL): "_abort_recognizing",
}
for _kind in _TERMINAL:
    TRANSITIONS[(_kind, SessionEvent.CANCEL)] = "_reset"
    TRANSITIONS[(_kind, SessionEvent.ACKNOWLEDGE)] = "_reset"


class RecognizeSession:
    """
    One recognizer: owns an AudioCapture and at most one in-flight request.

    Must be driven from the event loop thread.
    """

    def __init__(
        self,
        client: Optional[FingerprintClient] = None,
        capture: Optional[AudioCapture] = None,
        listen_timeout: Optional[float] = None,
        on_state_change: Optional[Callable[[SessionState], None]] = None,
        on_peak: Optional[Callable[[float], None]] = None,
    ):
        self.client = client or create_fingerprint_client(config.AUDIO_RECOGNITION["provider"])
        self.capture = capture or AudioCapture(subtype=self.client.clip_subtype)
        self.listen_timeout = listen_timeout if listen_timeout is not None else config.AUDIO_RECOGNITION["listen_timeout"]

        self._state = SessionState.idle()
        self._generation = 0
        self._device_id: Optional[int] = None
        self._timeout_handle: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None

        self._state_observers: List[Callable[[SessionState], None]] = []
        self._peak_observers: List[Callable[[float], None]] = []
        if on_state_change:
            self._state_observers.append(on_state_change)
        if on_peak:
            self._peak_observers.append(on_peak)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def generation(self) -> int:
        return self._generation

    def connect_state_changed(self, callback: Callable[[SessionState], None]) -> None:
        self._state_observers.append(callback)

    def connect_peak(self, callback: Callable[[float], None]) -> None:
        self._peak_observers.append(callback)

    def listen(self, device_id: Optional[int] = None) -> None:
        """
        Start a new attempt. A finished attempt is acknowledged first.

        Raises:
            AlreadyInProgress: currently listening or recognizing
        """
        if self._state.is_busy:
            raise AlreadyInProgress(f"Cannot listen while {self._state.kind.value}")
        if self._state.is_terminal:
            self._apply(SessionEvent.ACKNOWLEDGE)
        self._device_id = device_id
        self._apply(SessionEvent.LISTEN)

    def stop(self) -> None:
        """
        Stop listening and submit the clip.

        Raises:
            NotRecording: not listening
        """
        if self._state.kind != _LISTENING:
            raise NotRecording(f"Cannot stop while {self._state.kind.value}")
        self._apply(SessionEvent.STOP)

    def cancel(self) -> None:
        """Return to Idle from any state, discarding audio and late results."""
        self._apply(SessionEvent.CANCEL)

    def acknowledge(self) -> None:
        """Dismiss a finished attempt (Succeeded, NoMatchFound or Failed)."""
        self._apply(SessionEvent.ACKNOWLEDGE)

    async def close(self) -> None:
        """Cancel any attempt and release the fingerprint client."""
        self.cancel()
        await self.client.close()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _apply(self, event: SessionEvent, payload: Any = None) -> bool:
        handler_name = TRANSITIONS.get((self._state.kind, event))
        if handler_name is None:
            logger.debug(f"Ignoring {event.value} while {self._state.kind.value}")
            return False
        new_state = getattr(self, handler_name)(payload)
        self._set_state(new_state)
        return True

    def _deliver(self, generation: int, event: SessionEvent, payload: Any = None) -> None:
        """Apply an asynchronous event unless it belongs to an older attempt."""
        if generation != self._generation:
            logger.debug(f"Discarding stale {event.value} (generation {generation}, current {self._generation})")
            return
        self._apply(event, payload)

    def _set_state(self, new_state: SessionState) -> None:
        old_state = self._state
        self._state = new_state
        if new_state.kind == _IDLE:
            self._generation += 1

        logger.debug(f"Session state: {old_state.kind.value} -> {new_state.kind.value}")

        for observer in list(self._state_observers):
            try:
                observer(new_state)
            except Exception as e:
                logger.error(f"State change callback error: {e}")

    # ------------------------------------------------------------------
    # Transition handlers (each returns the next state)
    # ------------------------------------------------------------------

    def _start_listening(self, _payload) -> SessionState:
        generation = self._generation
        try:
            self.capture.start(
                self._device_id,
                on_peak=lambda level: self._on_peak(generation, level),
                on_event=lambda event, data: self._on_capture_event(generation, event, data),
            )
        except DeviceError as e:
            logger.error(f"Could not start capture: {e}")
            return SessionState.failed(e)
        except AlreadyRecording as e:
            logger.error(f"Could not start capture: {e}")
            return SessionState.failed(DeviceError(e.message))

        if self.listen_timeout and self.listen_timeout > 0:
            loop = asyncio.get_running_loop()
            self._timeout_handle = loop.call_later(
                self.listen_timeout, self._deliver, generation, SessionEvent.TIMEOUT, None
            )
        logger.info("Listening...")
        return SessionState.listening(datetime.now(timezone.utc))

    def _finish_listening(self, _payload) -> SessionState:
        self._cancel_timeout()
        try:
            clip = self.capture.stop()
        except (DeviceError, NotRecording) as e:
            logger.error(f"Could not finalize recording: {e}")
            return SessionState.failed(e)

        if clip.is_empty:
            logger.warning("Recording produced no audio")
            return SessionState.failed(DeviceError("No audio was recorded"))

        self._task = create_tracked_task(
            self._recognize(clip, self._generation), name="earshot-recognize"
        )
        return SessionState.recognizing(clip)

    def _abort_listening(self, _payload) -> SessionState:
        self._cancel_timeout()
        self.capture.abort()
        logger.info("Listening cancelled")
        return SessionState.idle()

    def _capture_failed(self, error: RecognizerError) -> SessionState:
        self._cancel_timeout()
        self.capture.abort()
        return SessionState.failed(error)

    def _matched(self, metadata: SongMetadata) -> SessionState:
        self._task = None
        return SessionState.succeeded(metadata)

    def _not_matched(self, _payload) -> SessionState:
        self._task = None
        return SessionState.no_match()

    def _request_failed(self, error: RequestError) -> SessionState:
        self._task = None
        return SessionState.failed(error)

    def _abort_recognizing(self, _payload) -> SessionState:
        if self._task is not None:
            # Not awaited: a late answer is discarded by the generation check
            self._task.cancel()
            self._task = None
        logger.info("Recognition cancelled")
        return SessionState.idle()

    def _reset(self, _payload) -> SessionState:
        return SessionState.idle()

    # ------------------------------------------------------------------
    # Asynchronous sources
    # ------------------------------------------------------------------

    def _cancel_timeout(self) -> None:
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None

    def _on_peak(self, generation: int, level: float) -> None:
        if generation != self._generation or self._state.kind != _LISTENING:
            return
        for observer in list(self._peak_observers):
            try:
                observer(level)
            except Exception as e:
                logger.error(f"Peak callback error: {e}")

    def _on_capture_event(self, generation: int, event: CaptureEvent, data: Any) -> None:
        if event == CaptureEvent.ERROR:
            self._deliver(generation, SessionEvent.CAPTURE_FAILED, data)
        elif event == CaptureEvent.END_OF_STREAM:
            self._deliver(generation, SessionEvent.END_OF_STREAM)

    async def _recognize(self, clip: RecordedClip, generation: int) -> None:
        logger.info(f"Recognizing {clip.duration:.1f}s clip with {self.client.name}...")
        try:
            verdict: Verdict = await self.client.recognize(clip)
        except RequestError as e:
            logger.warning(f"Recognition failed: {e}")
            self._deliver(generation, SessionEvent.REQUEST_FAILED, e)
            return
        except Exception as e:
            logger.error(f"Recognition client {self.client.name} raised {type(e).__name__}: {e}")
            error = RequestError(
                RequestErrorKind.MALFORMED_RESPONSE,
                f"{self.client.name} failed unexpectedly: {type(e).__name__}: {e}",
            )
            error.__cause__ = e
            self._deliver(generation, SessionEvent.REQUEST_FAILED, error)
            return

        if verdict.is_match:
            self._deliver(generation, SessionEvent.MATCH, verdict.metadata)
        else:
            self._deliver(generation, SessionEvent.NO_MATCH)
