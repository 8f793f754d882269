"""Pytest configuration and shared fixtures"""
import asyncio
import os
import sys
import tempfile
from pathlib import Path

# Keep settings.json, the song database and logs out of the working tree.
# Must run before config/settings are imported.
_TMP = Path(tempfile.mkdtemp(prefix="earshot-tests-"))
os.environ["EARSHOT_SETTINGS_FILE"] = str(_TMP / "settings.json")
os.environ["EARSHOT_DATA_DIR"] = str(_TMP / "data")
os.environ["EARSHOT_LOGS_DIR"] = str(_TMP / "logs")
os.environ["EARSHOT_DATABASE"] = str(_TMP / "data" / "songs.db")
os.environ.pop("AUDD_API_TOKEN", None)

sys.path.append(str(Path(__file__).parent.parent))

import pytest

from audio_recognition.base import FingerprintClient, SongMetadata, Verdict
from audio_recognition.capture import RecordedClip
from audio_recognition.errors import AlreadyRecording, NotRecording
from library.store import SongStore


def make_clip(data: bytes = b"OggS\x00fake-clip") -> RecordedClip:
    return RecordedClip(
        data=data,
        mime_type="audio/ogg; codecs=opus",
        sample_rate=16000,
        duration=3.0,
        peaks=[0.1, 0.5, 0.2],
    )


class FakeCapture:
    """Stands in for AudioCapture: records calls, lets tests fire callbacks."""

    def __init__(self, clip: RecordedClip = None, start_error: Exception = None):
        self.clip = clip or make_clip()
        self.start_error = start_error
        self.on_peak = None
        self.on_event = None
        self.recording = False
        self.calls = []

    def start(self, device_id=None, on_peak=None, on_event=None):
        self.calls.append(("start", device_id))
        if self.start_error is not None:
            raise self.start_error
        if self.recording:
            raise AlreadyRecording("already recording")
        self.recording = True
        self.on_peak = on_peak
        self.on_event = on_event

    def stop(self):
        self.calls.append(("stop",))
        if not self.recording:
            raise NotRecording("not recording")
        self.recording = False
        return self.clip

    def abort(self):
        self.calls.append(("abort",))
        self.recording = False


class FakeClient(FingerprintClient):
    """Recognition client whose answer the test controls through a future."""

    name = "fake"

    def __init__(self):
        self.future = None
        self.clips = []
        self.closed = False

    async def recognize(self, clip):
        self.clips.append(clip)
        self.future = asyncio.get_running_loop().create_future()
        return await self.future

    async def close(self):
        self.closed = True

    def answer(self, verdict: Verdict = None, error: Exception = None):
        if error is not None:
            self.future.set_exception(error)
        else:
            self.future.set_result(verdict)


SONG_X = SongMetadata(title="Song X", artist="Artist Y", album="Album Z")


async def settle(times: int = 5):
    """Let scheduled callbacks and tasks run."""
    for _ in range(times):
        await asyncio.sleep(0)


@pytest.fixture
def store(tmp_path):
    s = SongStore(tmp_path / "songs.db")
    yield s
    s.close()


@pytest.fixture
def fake_capture():
    return FakeCapture()


@pytest.fixture
def fake_client():
    return FakeClient()
