"""
Audio Recognition Module for Earshot

Records a clip from an input device, sends it to a fingerprinting service
(AudD or Shazam) and drives the listen/recognize state machine.
"""

from .base import FingerprintClient, SongMetadata, Verdict, create_fingerprint_client
from .capture import AudioCapture, CaptureEvent, RecordedClip
from .errors import (
    AlreadyInProgress,
    AlreadyRecording,
    DeviceError,
    DuplicateId,
    NotFound,
    NotRecording,
    RecognizerError,
    RequestError,
    RequestErrorKind,
    Stage,
    StorageError,
)
from .session import RecognizeSession, SessionState, SessionStateKind

__all__ = [
    'AudioCapture',
    'CaptureEvent',
    'RecordedClip',
    'FingerprintClient',
    'SongMetadata',
    'Verdict',
    'create_fingerprint_client',
    'RecognizeSession',
    'SessionState',
    'SessionStateKind',
    'RecognizerError',
    'DeviceError',
    'AlreadyRecording',
    'NotRecording',
    'AlreadyInProgress',
    'RequestError',
    'RequestErrorKind',
    'StorageError',
    'DuplicateId',
    'NotFound',
    'Stage',
]
