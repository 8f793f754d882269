"""
Audio Capture Module

Records from an input device using sounddevice and runs the blocks through
the capture pipeline (mono 16 kHz -> level meter -> Ogg encoder -> memory).
"""

import asyncio
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

try:
    import sounddevice as sd
except OSError:  # PortAudio shared library missing
    sd = None

import config
from logging_config import get_logger
from .errors import AlreadyRecording, DeviceError, NotRecording
from .pipeline import CapturePipeline

logger = get_logger(__name__)

# Device queries can block for seconds on some drivers, so results are cached
_devices_cache: Optional[list] = None
_hostapis_cache: Optional[list] = None
_devices_cache_time: float = 0
DEVICES_CACHE_TTL = 60  # Seconds

# Known loopback device name patterns (system audio rather than a microphone)
LOOPBACK_PATTERNS = [
    "monitor of",
    "loopback",
    "stereo mix",
    "what u hear",
    "vb-cable",
    "vb-audio",
    "voicemeeter",
]


def _query_devices_sync(force: bool = False) -> tuple:
    """
    Query audio devices and host APIs with caching.

    Synchronous; call from an executor when on the event loop.

    Returns:
        Tuple of (devices_list, hostapis_list)
    """
    global _devices_cache, _hostapis_cache, _devices_cache_time

    now = time.time()
    if not force and _devices_cache is not None and (now - _devices_cache_time) < DEVICES_CACHE_TTL:
        return (_devices_cache, _hostapis_cache or [])

    if sd is None:
        return ([], [])

    try:
        devices = sd.query_devices()
        hostapis = sd.query_hostapis()
        _devices_cache = list(devices) if devices else []
        _hostapis_cache = list(hostapis) if hostapis else []
        _devices_cache_time = now
        return (_devices_cache, _hostapis_cache)
    except sd.PortAudioError as e:
        logger.warning(f"Failed to query audio devices: {e}")
        return (_devices_cache or [], _hostapis_cache or [])


def is_available() -> bool:
    """Check if audio capture is available (PortAudio loaded)."""
    return sd is not None


def get_default_input_device() -> Optional[int]:
    """Index of the system default input device, or None."""
    if sd is None:
        return None
    try:
        default_in = sd.default.device[0]
    except (sd.PortAudioError, IndexError, TypeError):
        return None
    if default_in is None or default_in < 0:
        return None
    return int(default_in)


def list_input_devices(force: bool = False) -> List[Dict[str, Any]]:
    """
    List available audio input devices.

    Returns:
        List of device info dicts with:
        - index: Device ID
        - name: Device name
        - channels: Max input channels
        - sample_rate: Default sample rate
        - api: Audio API name
        - is_loopback: True if likely a loopback/monitor device
        - is_default: True for the system default input
    """
    all_devices, host_apis = _query_devices_sync(force)
    default_index = get_default_input_device()

    devices = []
    for i, device in enumerate(all_devices):
        # Only include input devices (>0 input channels)
        if device.get('max_input_channels', 0) <= 0:
            continue

        name = device.get('name', f'Device {i}')
        name_lower = name.lower()

        api_idx = device.get('hostapi', 0)
        api_name = host_apis[api_idx].get('name', 'Unknown') if api_idx < len(host_apis) else 'Unknown'

        devices.append({
            'index': i,
            'name': name,
            'channels': device.get('max_input_channels', 0),
            'sample_rate': device.get('default_samplerate', 44100),
            'api': api_name,
            'is_loopback': any(p in name_lower for p in LOOPBACK_PATTERNS),
            'is_default': i == default_index,
        })

    return devices


async def list_input_devices_async() -> List[Dict[str, Any]]:
    """Async version of list_input_devices. Runs in the worker executor."""
    from system_utils.helpers import run_in_daemon_executor
    return await run_in_daemon_executor(list_input_devices)


@dataclass
class RecordedClip:
    """
    Encoded audio from one listen attempt.

    Attributes:
        data: Ogg bytes (empty when nothing was captured)
        mime_type: Container/codec of ``data``
        sample_rate: Sample rate of the encoded audio in Hz
        duration: Seconds of audio encoded
        peaks: Normalized (0..1) peak levels reported while recording
    """
    data: bytes
    mime_type: str
    sample_rate: int
    duration: float
    peaks: List[float] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.data


class CaptureEvent(Enum):
    PEAK = "peak"
    ERROR = "error"
    END_OF_STREAM = "end_of_stream"


class AudioCapture:
    """
    One recording from an input device.

    start()/stop()/abort() and every callback run on the thread that owns the
    asyncio loop. The PortAudio thread only feeds the pipeline and schedules
    events onto that loop.
    """

    def __init__(
        self,
        sample_rate: int = config.AUDIO_RECOGNITION["sample_rate"],
        peak_interval: float = config.AUDIO_RECOGNITION["peak_interval"],
        subtype: str = "OPUS",
        stop_timeout: float = config.AUDIO_RECOGNITION["stop_timeout"],
    ):
        self.sample_rate = sample_rate
        self.peak_interval = peak_interval
        self.subtype = subtype
        self.stop_timeout = stop_timeout

        self._stream = None
        self._pipeline: Optional[CapturePipeline] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._on_peak: Optional[Callable[[float], None]] = None
        self._on_event: Optional[Callable[[CaptureEvent, Any], None]] = None
        self._watching = False
        self._stopping = False

        # Explicit dispatch table: each handler returns whether to keep watching
        self._handlers: Dict[CaptureEvent, Callable[[Any], bool]] = {
            CaptureEvent.PEAK: self._handle_peak,
            CaptureEvent.ERROR: self._handle_error,
            CaptureEvent.END_OF_STREAM: self._handle_end_of_stream,
        }

    @property
    def is_recording(self) -> bool:
        return self._stream is not None

    def start(
        self,
        device_id: Optional[int] = None,
        on_peak: Optional[Callable[[float], None]] = None,
        on_event: Optional[Callable[[CaptureEvent, Any], None]] = None,
    ) -> None:
        """
        Begin recording.

        Args:
            device_id: Input device index (None = system default)
            on_peak: Called with a 0..1 level roughly every peak_interval
            on_event: Called with (CaptureEvent.ERROR, DeviceError) or
                      (CaptureEvent.END_OF_STREAM, None)

        Raises:
            AlreadyRecording: a recording is in progress
            DeviceError: the device could not be opened
        """
        if self._stream is not None:
            raise AlreadyRecording("There is already a recording in progress")
        if sd is None:
            raise DeviceError("Audio capture unavailable (PortAudio library not found)")

        loop = asyncio.get_running_loop()
        input_rate = self._negotiate_rate(device_id)
        pipeline = CapturePipeline(input_rate, self.sample_rate, self.peak_interval, self.subtype)

        try:
            stream = sd.InputStream(
                samplerate=input_rate,
                channels=1,
                device=device_id,
                dtype='float32',
                blocksize=0,
                callback=self._audio_callback,
                finished_callback=self._finished_callback,
            )
        except (sd.PortAudioError, ValueError) as e:
            raise DeviceError(f"Could not open input device {device_id!r}: {e}") from e

        self._loop = loop
        self._pipeline = pipeline
        self._on_peak = on_peak
        self._on_event = on_event
        self._watching = True
        self._stopping = False
        self._stream = stream

        try:
            stream.start()
        except sd.PortAudioError as e:
            self._teardown()
            try:
                stream.close()
            except sd.PortAudioError:
                pass
            raise DeviceError(f"Could not start input device {device_id!r}: {e}") from e

        if device_id is None:
            logger.warning("Recording from the system default input device")
        else:
            logger.debug(f"Using device {device_id} for recording ({input_rate} Hz -> {self.sample_rate} Hz)")

    def stop(self) -> RecordedClip:
        """
        Stop recording and return the encoded clip.

        Raises:
            NotRecording: nothing is being recorded
            DeviceError: the encoder could not finalize the clip
        """
        if self._stream is None:
            raise NotRecording("Recording has not been started")

        stream, pipeline = self._stream, self._pipeline
        self._stopping = True
        self._close_stream(stream)
        self._teardown()

        data = pipeline.finish()
        clip = RecordedClip(
            data=data,
            mime_type=pipeline.mime_type,
            sample_rate=pipeline.output_rate,
            duration=pipeline.duration,
            peaks=list(pipeline.peaks),
        )
        logger.debug(f"Capture finished: {len(data) / 1024:.1f} KB, {clip.duration:.1f}s")
        return clip

    def abort(self) -> None:
        """Stop recording and throw the audio away. No-op when idle."""
        if self._stream is None:
            return
        stream, pipeline = self._stream, self._pipeline
        self._stopping = True
        self._close_stream(stream)
        self._teardown()
        try:
            pipeline.finish()
        except DeviceError as e:
            logger.debug(f"Discarded clip failed to finalize: {e}")

    def __del__(self):
        if getattr(self, '_stream', None) is None:
            return
        try:
            self.abort()
        except Exception as e:  # nobody is left to receive this
            logger.debug(f"Failed to stop capture on dispose: {e}")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _negotiate_rate(self, device_id: Optional[int]) -> int:
        """Use the target rate when the device supports it, else its native rate."""
        try:
            sd.check_input_settings(device=device_id, channels=1, dtype='float32', samplerate=self.sample_rate)
            return self.sample_rate
        except (sd.PortAudioError, ValueError):
            pass
        try:
            info = sd.query_devices(device_id, 'input')
        except (sd.PortAudioError, ValueError) as e:
            raise DeviceError(f"Input device {device_id!r} not available: {e}") from e
        native_rate = int(info.get('default_samplerate', 44100))
        logger.debug(f"Device {device_id} does not take {self.sample_rate} Hz, resampling from {native_rate} Hz")
        return native_rate

    def _teardown(self) -> None:
        self._stream = None
        self._pipeline = None
        self._watching = False
        self._on_peak = None
        self._on_event = None

    def _close_stream(self, stream) -> None:
        """Stop and close the stream, waiting at most stop_timeout seconds."""
        finished = threading.Event()

        def _closer():
            try:
                if stream.active:
                    stream.stop()
                stream.close()
            except sd.PortAudioError as e:
                logger.error(f"Error stopping/closing input stream: {e}")
            finally:
                finished.set()

        t = threading.Thread(target=_closer, daemon=True, name="Earshot_StreamClose")
        t.start()
        if not finished.wait(self.stop_timeout):
            logger.error(f"Input stream did not close within {self.stop_timeout}s")

    def _audio_callback(self, indata, frames, time_info, status):
        """PortAudio thread: feed the pipeline, forward events to the loop."""
        if status:
            logger.debug(f"Input stream status: {status}")
        pipeline = self._pipeline
        if pipeline is None:
            return
        try:
            levels = pipeline.feed(indata)
        except DeviceError as e:
            self._post(CaptureEvent.ERROR, e)
            raise sd.CallbackAbort from e
        for level in levels:
            self._post(CaptureEvent.PEAK, level)

    def _finished_callback(self):
        """PortAudio thread: stream ended on its own (device gone) or was stopped."""
        if not self._stopping:
            self._post(CaptureEvent.END_OF_STREAM, None)

    def _post(self, event: CaptureEvent, payload: Any) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._dispatch, event, payload)
        except RuntimeError:
            # Loop closed between the check and the call
            pass

    def _dispatch(self, event: CaptureEvent, payload: Any) -> None:
        """Loop thread: route an event through the dispatch table."""
        if not self._watching:
            logger.debug(f"Ignoring {event.value} event after capture finished")
            return
        self._watching = self._handlers[event](payload)

    def _handle_peak(self, level: float) -> bool:
        if self._on_peak:
            self._on_peak(level)
        return True

    def _handle_error(self, error: DeviceError) -> bool:
        logger.warning(f"Capture pipeline error: {error}")
        if self._on_event:
            self._on_event(CaptureEvent.ERROR, error)
        return False

    def _handle_end_of_stream(self, _payload: Any) -> bool:
        logger.debug("End of stream received from input device")
        if self._on_event:
            self._on_event(CaptureEvent.END_OF_STREAM, None)
        return False
