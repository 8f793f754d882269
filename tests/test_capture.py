"""
Tests for AudioCapture with a fake sounddevice backend
"""
import numpy as np
import pytest

import audio_recognition.capture as capture_module
from audio_recognition.capture import AudioCapture, CaptureEvent
from audio_recognition.errors import AlreadyRecording, DeviceError, NotRecording, Stage

from conftest import settle


class FakePortAudioError(Exception):
    pass


class FakeCallbackAbort(Exception):
    pass


class FakeStream:
    def __init__(self, samplerate, channels, device, dtype, blocksize, callback, finished_callback):
        self.samplerate = samplerate
        self.device = device
        self.callback = callback
        self.finished_callback = finished_callback
        self.active = False
        self.closed = False

    def start(self):
        self.active = True

    def stop(self):
        self.active = False
        self.finished_callback()

    def close(self):
        self.closed = True

    def push(self, samples):
        self.callback(np.asarray(samples, dtype=np.float32).reshape(-1, 1), len(samples), None, None)


class FakeSoundDevice:
    PortAudioError = FakePortAudioError
    CallbackAbort = FakeCallbackAbort

    def __init__(self, supported_rates=(16000,), native_rate=48000):
        self.supported_rates = supported_rates
        self.native_rate = native_rate
        self.streams = []
        self.open_error = None

        class _Default:
            device = (1, 0)

        self.default = _Default()

    def check_input_settings(self, device=None, channels=None, dtype=None, samplerate=None):
        if samplerate not in self.supported_rates:
            raise FakePortAudioError("Invalid sample rate")

    def query_devices(self, device=None, kind=None):
        devices = [
            {'name': 'Speakers', 'max_input_channels': 0, 'hostapi': 0, 'default_samplerate': 48000},
            {'name': 'Built-in Microphone', 'max_input_channels': 2, 'hostapi': 0, 'default_samplerate': 48000},
            {'name': 'Monitor of Built-in Audio', 'max_input_channels': 2, 'hostapi': 0, 'default_samplerate': 44100},
        ]
        if kind == 'input':
            return {'name': 'Built-in Microphone', 'default_samplerate': self.native_rate}
        return devices

    def query_hostapis(self):
        return [{'name': 'ALSA'}]

    def InputStream(self, **kwargs):
        if self.open_error is not None:
            raise self.open_error
        stream = FakeStream(**kwargs)
        self.streams.append(stream)
        return stream


@pytest.fixture
def fake_sd(monkeypatch):
    sd = FakeSoundDevice()
    monkeypatch.setattr(capture_module, "sd", sd)
    return sd


def sine(seconds, rate=16000, amplitude=0.5, freq=440.0):
    t = np.arange(int(seconds * rate)) / rate
    return (amplitude * np.sin(2 * np.pi * freq * t)).astype(np.float32)


class TestDevices:
    def test_list_input_devices(self, fake_sd):
        devices = capture_module.list_input_devices(force=True)
        assert [d['index'] for d in devices] == [1, 2]
        mic, monitor = devices
        assert mic['name'] == 'Built-in Microphone'
        assert mic['is_default'] is True
        assert mic['is_loopback'] is False
        assert mic['api'] == 'ALSA'
        assert monitor['is_loopback'] is True

    def test_default_input_device(self, fake_sd):
        assert capture_module.get_default_input_device() == 1

    def test_unavailable_backend(self, monkeypatch):
        monkeypatch.setattr(capture_module, "sd", None)
        assert capture_module.is_available() is False
        assert capture_module.get_default_input_device() is None


class TestRecording:
    async def test_peaks_and_encoded_clip(self, fake_sd):
        capture = AudioCapture(stop_timeout=1.0)
        peaks = []
        capture.start(device_id=1, on_peak=peaks.append)
        stream = fake_sd.streams[0]
        assert stream.samplerate == 16000
        assert stream.device == 1

        stream.push(sine(0.25))  # 4000 samples -> three full 80 ms windows
        await settle()
        assert len(peaks) == 3
        assert all(p == pytest.approx(0.5, abs=0.02) for p in peaks)

        clip = capture.stop()
        assert stream.closed
        assert not capture.is_recording
        assert clip.data.startswith(b"OggS")
        assert clip.mime_type == "audio/ogg; codecs=opus"
        assert clip.sample_rate == 16000
        assert clip.duration == pytest.approx(0.25)
        assert clip.peaks == peaks

    async def test_resamples_native_rate(self, fake_sd):
        fake_sd.supported_rates = (48000,)
        capture = AudioCapture(subtype="VORBIS")
        capture.start(device_id=1)
        stream = fake_sd.streams[0]
        assert stream.samplerate == 48000
        stream.push(sine(0.5, rate=48000))
        clip = capture.stop()
        assert clip.mime_type == "audio/ogg; codecs=vorbis"
        assert clip.duration == pytest.approx(0.5, abs=0.01)

    async def test_stop_without_audio_gives_empty_buffer(self, fake_sd):
        capture = AudioCapture()
        capture.start()
        clip = capture.stop()
        assert clip.data == b""
        assert clip.is_empty

    async def test_start_twice_raises(self, fake_sd):
        capture = AudioCapture()
        capture.start()
        with pytest.raises(AlreadyRecording):
            capture.start()
        capture.abort()

    async def test_stop_when_idle_raises(self, fake_sd):
        with pytest.raises(NotRecording):
            AudioCapture().stop()

    async def test_open_failure_is_device_error(self, fake_sd):
        fake_sd.open_error = FakePortAudioError("Device unavailable")
        capture = AudioCapture()
        with pytest.raises(DeviceError) as exc_info:
            capture.start(device_id=7)
        assert exc_info.value.stage == Stage.CAPTURE
        assert not capture.is_recording

    async def test_abort_discards_and_allows_restart(self, fake_sd):
        capture = AudioCapture()
        capture.start()
        fake_sd.streams[0].push(sine(0.1))
        capture.abort()
        assert not capture.is_recording
        capture.abort()  # no-op when idle
        capture.start()
        assert len(fake_sd.streams) == 2
        capture.abort()


class TestEvents:
    async def test_end_of_stream_event(self, fake_sd):
        capture = AudioCapture()
        events = []
        capture.start(on_event=lambda kind, payload: events.append(kind))
        fake_sd.streams[0].finished_callback()
        await settle()
        assert events == [CaptureEvent.END_OF_STREAM]
        capture.abort()

    async def test_encoder_failure_event(self, fake_sd, monkeypatch):
        capture = AudioCapture()
        events = []
        capture.start(on_event=lambda kind, payload: events.append((kind, payload)))

        def broken_feed(block):
            raise DeviceError("Encoder failed", Stage.ENCODE)

        monkeypatch.setattr(capture._pipeline, "feed", broken_feed)
        with pytest.raises(FakeCallbackAbort):
            fake_sd.streams[0].push(sine(0.1))
        fake_sd.streams[0].finished_callback()
        await settle()

        assert len(events) == 1
        kind, error = events[0]
        assert kind == CaptureEvent.ERROR
        assert error.stage == Stage.ENCODE
        capture.abort()

    async def test_no_events_after_stop(self, fake_sd):
        capture = AudioCapture()
        peaks = []
        capture.start(on_peak=peaks.append)
        stream = fake_sd.streams[0]
        callback = stream.callback
        capture.stop()
        callback(sine(0.25).reshape(-1, 1), 4000, None, None)
        await settle()
        assert peaks == []


class TestDispose:
    async def test_dropping_active_capture_stops_it(self, fake_sd):
        capture = AudioCapture()
        capture.start()
        stream = fake_sd.streams[0]
        capture.__del__()
        assert stream.closed
        assert not capture.is_recording

    def test_dropping_idle_capture_is_quiet(self):
        AudioCapture().__del__()
