"""
Recognition Errors

Every error carries the stage that failed so the front end can pick a
specific message without inspecting exception types.
"""

from enum import Enum
from typing import Optional


class Stage(Enum):
    """Where in the listen → recognize → store chain an error happened."""
    CAPTURE = "capture"
    ENCODE = "encode"
    UPLOAD = "upload"
    PARSE = "parse"
    PERSIST = "persist"


class RecognizerError(Exception):
    """Base class for all Earshot errors."""

    default_stage = Stage.CAPTURE

    def __init__(self, message: str, stage: Optional[Stage] = None):
        super().__init__(message)
        self.message = message
        self.stage = stage or self.default_stage

    @property
    def user_message(self) -> str:
        return self.message

    def __str__(self) -> str:
        return f"[{self.stage.value}] {self.message}"


class DeviceError(RecognizerError):
    """Capture device unavailable or misconfigured, or the encoder failed."""

    @property
    def user_message(self) -> str:
        if self.stage == Stage.ENCODE:
            return "The recording could not be encoded. Try again."
        return "The input device could not be used. Check your microphone settings and try again."


class AlreadyRecording(RecognizerError):
    """start() called on a capture that is already running."""


class NotRecording(RecognizerError):
    """stop() called while nothing is being recorded."""


class AlreadyInProgress(RecognizerError):
    """listen() called while another attempt is listening or recognizing."""


class RequestErrorKind(Enum):
    NETWORK = "network"
    SERVICE_UNAVAILABLE = "service_unavailable"
    QUOTA_EXCEEDED = "quota_exceeded"
    MALFORMED_RESPONSE = "malformed_response"


_REQUEST_MESSAGES = {
    RequestErrorKind.NETWORK: "Could not reach the recognition service. Check your connection and try again.",
    RequestErrorKind.SERVICE_UNAVAILABLE: "The recognition service is unavailable right now. Try again later.",
    RequestErrorKind.QUOTA_EXCEEDED: "The recognition limit was reached. Set an API token or wait until tomorrow.",
    RequestErrorKind.MALFORMED_RESPONSE: "The recognition service sent a response Earshot could not read.",
}


class RequestError(RecognizerError):
    """Recognition request failed before a verdict was available."""

    default_stage = Stage.UPLOAD

    def __init__(self, kind: RequestErrorKind, message: str, stage: Optional[Stage] = None):
        if stage is None and kind == RequestErrorKind.MALFORMED_RESPONSE:
            stage = Stage.PARSE
        super().__init__(message, stage)
        self.kind = kind

    @property
    def is_retryable(self) -> bool:
        """Network and availability failures may be retried by the user."""
        return self.kind in (RequestErrorKind.NETWORK, RequestErrorKind.SERVICE_UNAVAILABLE)

    @property
    def user_message(self) -> str:
        return _REQUEST_MESSAGES[self.kind]


class StorageError(RecognizerError):
    """Durable song storage could not be written."""

    default_stage = Stage.PERSIST

    @property
    def user_message(self) -> str:
        return "The song history could not be saved."


class DuplicateId(StorageError):
    """A song with the same id is already stored."""

    def __init__(self, song_id: str):
        super().__init__(f"Song id already exists: {song_id}")
        self.song_id = song_id


class NotFound(StorageError):
    """No stored song has the given id."""

    def __init__(self, song_id: str):
        super().__init__(f"Song not found: {song_id}")
        self.song_id = song_id
