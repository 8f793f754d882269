"""
Tests for the listen/recognize state machine
"""
import asyncio

import pytest

from audio_recognition.base import Verdict
from audio_recognition.capture import CaptureEvent
from audio_recognition.errors import (
    AlreadyInProgress,
    DeviceError,
    NotRecording,
    RequestError,
    RequestErrorKind,
    Stage,
)
from audio_recognition.session import RecognizeSession, SessionEvent, SessionStateKind

from conftest import SONG_X, FakeCapture, FakeClient, make_clip, settle

K = SessionStateKind


def make_session(capture=None, client=None, timeout=0):
    capture = capture or FakeCapture()
    client = client or FakeClient()
    session = RecognizeSession(client, capture, listen_timeout=timeout)
    seen = []
    session.connect_state_changed(lambda state: seen.append(state.kind))
    return session, capture, client, seen


async def to_recognizing(session):
    session.listen()
    session.stop()
    await settle()
    assert session.state.kind == K.RECOGNIZING


class TestHappyPath:
    async def test_listen_stop_match(self):
        session, capture, client, seen = make_session()
        peaks = []
        session.connect_peak(peaks.append)

        session.listen(device_id=3)
        assert capture.calls[0] == ("start", 3)
        assert session.state.kind == K.LISTENING
        assert session.state.started_at is not None

        for level in (0.1, 0.4, 0.9):
            capture.on_peak(level)
        assert peaks == [0.1, 0.4, 0.9]

        session.stop()
        assert session.state.kind == K.RECOGNIZING
        assert session.state.clip is capture.clip

        await settle()
        assert client.clips == [capture.clip]
        client.answer(Verdict.match(SONG_X))
        await settle()

        assert session.state.kind == K.SUCCEEDED
        assert session.state.metadata == SONG_X
        assert seen == [K.LISTENING, K.RECOGNIZING, K.SUCCEEDED]

    async def test_no_match(self):
        session, _, client, seen = make_session()
        await to_recognizing(session)
        client.answer(Verdict.no_match())
        await settle()
        assert session.state.kind == K.NO_MATCH_FOUND
        assert seen[-1] == K.NO_MATCH_FOUND

    async def test_request_error_fails(self):
        session, _, client, _ = make_session()
        await to_recognizing(session)
        client.answer(error=RequestError(RequestErrorKind.QUOTA_EXCEEDED, "limit"))
        await settle()
        assert session.state.kind == K.FAILED
        assert session.state.error.kind == RequestErrorKind.QUOTA_EXCEEDED
        assert session.state.error.stage == Stage.UPLOAD
        assert not session.state.error.is_retryable

    async def test_listen_timeout_stops_automatically(self):
        session, capture, _, _ = make_session(timeout=0.01)
        session.listen()
        await asyncio.sleep(0.05)
        assert ("stop",) in capture.calls
        assert session.state.kind == K.RECOGNIZING
        session.cancel()


class TestFailures:
    async def test_unexpected_client_exception_fails(self):
        session, _, client, seen = make_session()
        await to_recognizing(session)
        client.answer(error=KeyError(0))
        await settle()
        assert session.state.kind == K.FAILED
        assert session.state.error.kind == RequestErrorKind.MALFORMED_RESPONSE
        assert session.state.error.stage == Stage.PARSE
        assert isinstance(session.state.error.__cause__, KeyError)
        assert seen[-1] == K.FAILED
        session.listen()
        assert session.state.kind == K.LISTENING
        session.cancel()

    async def test_start_failure_goes_to_failed(self):
        capture = FakeCapture(start_error=DeviceError("no such device"))
        session, _, _, seen = make_session(capture=capture)
        session.listen()
        assert session.state.kind == K.FAILED
        assert isinstance(session.state.error, DeviceError)
        assert seen == [K.FAILED]

    async def test_capture_error_event(self):
        session, capture, _, _ = make_session()
        session.listen()
        capture.on_event(CaptureEvent.ERROR, DeviceError("encoder broke", Stage.ENCODE))
        assert session.state.kind == K.FAILED
        assert session.state.error.stage == Stage.ENCODE
        assert ("abort",) in capture.calls

    async def test_end_of_stream_submits_what_was_recorded(self):
        session, capture, _, _ = make_session()
        session.listen()
        capture.on_event(CaptureEvent.END_OF_STREAM, None)
        assert session.state.kind == K.RECOGNIZING
        session.cancel()

    async def test_empty_clip_fails(self):
        capture = FakeCapture(clip=make_clip(b""))
        session, _, client, _ = make_session(capture=capture)
        session.listen()
        session.stop()
        await settle()
        assert session.state.kind == K.FAILED
        assert client.clips == []


class TestPreconditions:
    async def test_listen_while_listening_raises(self):
        session, capture, _, seen = make_session()
        session.listen()
        before = (session.state, session.generation, list(seen))
        with pytest.raises(AlreadyInProgress):
            session.listen()
        assert (session.state, session.generation, seen) == before
        assert capture.calls.count(("start", None)) == 1

    async def test_listen_while_recognizing_raises(self):
        session, _, _, seen = make_session()
        await to_recognizing(session)
        state = session.state
        with pytest.raises(AlreadyInProgress):
            session.listen()
        assert session.state is state
        session.cancel()

    async def test_stop_when_idle_raises(self):
        session, _, _, _ = make_session()
        with pytest.raises(NotRecording):
            session.stop()

    async def test_listen_from_terminal_emits_idle_first(self):
        session, _, client, seen = make_session()
        await to_recognizing(session)
        client.answer(Verdict.no_match())
        await settle()
        seen.clear()
        session.listen()
        assert seen == [K.IDLE, K.LISTENING]


class TestCancellation:
    async def test_cancel_while_listening(self):
        session, capture, client, seen = make_session()
        session.listen()
        session.cancel()
        assert session.state.kind == K.IDLE
        assert ("abort",) in capture.calls
        await settle()
        assert client.clips == []

    async def test_peaks_after_cancel_are_dropped(self):
        session, capture, _, _ = make_session()
        peaks = []
        session.connect_peak(peaks.append)
        session.listen()
        stale_peak = capture.on_peak
        session.cancel()
        stale_peak(0.7)
        assert peaks == []

    async def test_cancel_while_recognizing_discards_late_result(self):
        session, _, client, seen = make_session()
        await to_recognizing(session)
        late = client.future
        session.cancel()
        assert session.state.kind == K.IDLE
        await settle()
        assert late.cancelled()
        assert seen == [K.LISTENING, K.RECOGNIZING, K.IDLE]

    async def test_stale_result_from_previous_attempt_is_ignored(self):
        session, _, client, seen = make_session()
        await to_recognizing(session)
        generation = session.generation
        session.cancel()
        # A result tagged with the old generation arrives anyway
        session._deliver(generation, SessionEvent.MATCH, SONG_X)
        assert session.state.kind == K.IDLE
        assert K.SUCCEEDED not in seen

    @pytest.mark.parametrize("outcome", ["succeeded", "no_match", "failed"])
    async def test_cancel_from_terminal_states(self, outcome):
        session, _, client, seen = make_session()
        await to_recognizing(session)
        if outcome == "succeeded":
            client.answer(Verdict.match(SONG_X))
        elif outcome == "no_match":
            client.answer(Verdict.no_match())
        else:
            client.answer(error=RequestError(RequestErrorKind.NETWORK, "offline"))
        await settle()
        assert session.state.is_terminal
        session.cancel()
        assert session.state.kind == K.IDLE

    async def test_cancel_when_idle_is_noop(self):
        session, _, _, seen = make_session()
        session.cancel()
        assert session.state.kind == K.IDLE
        assert seen == []

    async def test_acknowledge_only_leaves_terminal_states(self):
        session, _, client, _ = make_session()
        session.listen()
        session.acknowledge()
        assert session.state.kind == K.LISTENING
        session.stop()
        await settle()
        client.answer(Verdict.no_match())
        await settle()
        session.acknowledge()
        assert session.state.kind == K.IDLE

    async def test_close_cancels_and_closes_client(self):
        session, capture, client, _ = make_session()
        session.listen()
        await session.close()
        assert session.state.kind == K.IDLE
        assert client.closed


class TestObservers:
    async def test_failing_observer_does_not_break_transitions(self):
        session, _, _, seen = make_session()

        def broken(_state):
            raise RuntimeError("observer bug")

        session.connect_state_changed(broken)
        session.listen()
        assert session.state.kind == K.LISTENING
        assert seen == [K.LISTENING]


