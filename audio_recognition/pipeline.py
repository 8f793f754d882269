"""
Capture Pipeline Stages

Converts raw device blocks into an encoded clip:
device block -> mono downmix -> resample to 16 kHz -> level meter -> Ogg encoder -> BytesIO

All stages run on the PortAudio callback thread. The pipeline never calls back
into the application directly; it returns peak readings to its caller, which
hands them to the event loop.
"""

import io
import math
import threading
from typing import List, Optional

import numpy as np
import soundfile as sf

from logging_config import get_logger
from .errors import DeviceError, Stage

logger = get_logger(__name__)

# Lowest reading the meter reports for digital silence (matches GStreamer's level element)
SILENCE_DB = -700.0


def to_mono(block: np.ndarray) -> np.ndarray:
    """Downmix a (frames, channels) block to a 1-D float32 array."""
    data = np.asarray(block, dtype=np.float32)
    if data.ndim == 1:
        return data
    if data.shape[1] == 1:
        return data[:, 0].copy()
    return data.mean(axis=1, dtype=np.float32)


class Resampler:
    """
    Streaming linear-interpolation resampler.

    Carries the last input sample and the fractional read position across
    blocks so consecutive blocks join without clicks.
    """

    def __init__(self, src_rate: int, dst_rate: int):
        self.src_rate = src_rate
        self.dst_rate = dst_rate
        self._step = src_rate / dst_rate
        self._pos = 0.0
        self._tail = np.zeros(0, dtype=np.float32)

    @property
    def is_passthrough(self) -> bool:
        return self.src_rate == self.dst_rate

    def process(self, block: np.ndarray) -> np.ndarray:
        if self.is_passthrough:
            return block

        data = np.concatenate([self._tail, block])
        n = len(data)
        if n < 2:
            self._tail = data
            return np.zeros(0, dtype=np.float32)

        positions = np.arange(self._pos, n - 1, self._step)
        out = np.interp(positions, np.arange(n), data).astype(np.float32)

        # Next output position, re-based so data[-1] becomes index 0
        self._pos = self._pos + len(positions) * self._step - (n - 1)
        self._tail = data[-1:]
        return out


class LevelMeter:
    """
    Peak meter that reports once per interval, in dBFS.

    Mirrors GStreamer's ``level`` element with ``peak-ttl`` equal to the
    interval: each report is the loudest sample of the elapsed window.
    """

    def __init__(self, sample_rate: int, interval: float = 0.08):
        self.window = max(1, int(round(sample_rate * interval)))
        self._filled = 0
        self._peak = 0.0

    def process(self, samples: np.ndarray) -> List[float]:
        """Feed samples, return the dB readings for every window completed."""
        readings = []
        offset = 0
        total = len(samples)
        while offset < total:
            take = min(self.window - self._filled, total - offset)
            chunk = samples[offset:offset + take]
            if take:
                self._peak = max(self._peak, float(np.max(np.abs(chunk))))
            self._filled += take
            offset += take
            if self._filled >= self.window:
                readings.append(self.to_db(self._peak))
                self._filled = 0
                self._peak = 0.0
        return readings

    @staticmethod
    def to_db(peak: float) -> float:
        if peak <= 0.0:
            return SILENCE_DB
        return max(SILENCE_DB, 20.0 * math.log10(peak))


def normalize_peak(db: float) -> float:
    """Convert a dBFS reading to a linear 0..1 amplitude."""
    return min(1.0, 10 ** (db / 20.0))


class OggSink:
    """
    Lossy encoder + Ogg muxer writing into an in-memory buffer.

    The encoder is opened on the first write, so a capture that produced no
    audio finishes with an empty buffer instead of a header-only file.
    """

    MIME_TYPES = {
        "OPUS": "audio/ogg; codecs=opus",
        "VORBIS": "audio/ogg; codecs=vorbis",
    }

    def __init__(self, sample_rate: int, subtype: str = "OPUS"):
        if subtype not in self.MIME_TYPES:
            raise ValueError(f"Unsupported Ogg subtype: {subtype}")
        self.sample_rate = sample_rate
        self.subtype = subtype
        self._buffer = io.BytesIO()
        self._file: Optional[sf.SoundFile] = None
        self.frames_written = 0

    @property
    def mime_type(self) -> str:
        return self.MIME_TYPES[self.subtype]

    def write(self, samples: np.ndarray) -> None:
        if not len(samples):
            return
        try:
            if self._file is None:
                self._file = sf.SoundFile(
                    self._buffer,
                    mode='w',
                    samplerate=self.sample_rate,
                    channels=1,
                    format='OGG',
                    subtype=self.subtype,
                )
            self._file.write(samples)
        except (sf.LibsndfileError, RuntimeError, TypeError) as e:
            raise DeviceError(f"Encoder failed: {e}", Stage.ENCODE) from e
        self.frames_written += len(samples)

    def finish(self) -> bytes:
        """Flush the encoder and return the muxed bytes."""
        if self._file is not None:
            try:
                self._file.close()
            except (sf.LibsndfileError, RuntimeError) as e:
                raise DeviceError(f"Encoder failed to finalize: {e}", Stage.ENCODE) from e
            self._file = None
        return self._buffer.getvalue()


class CapturePipeline:
    """Chains the stages for one recording; thread-safe feed/finish."""

    def __init__(
        self,
        input_rate: int,
        output_rate: int = 16000,
        peak_interval: float = 0.08,
        subtype: str = "OPUS",
    ):
        self.output_rate = output_rate
        self._resampler = Resampler(input_rate, output_rate)
        self._meter = LevelMeter(output_rate, peak_interval)
        self._sink = OggSink(output_rate, subtype)
        self._lock = threading.Lock()
        self._finished = False
        self.peaks: List[float] = []

    @property
    def mime_type(self) -> str:
        return self._sink.mime_type

    @property
    def duration(self) -> float:
        return self._sink.frames_written / self.output_rate

    def feed(self, block: np.ndarray) -> List[float]:
        """
        Push one device block through the chain.

        Returns the normalized peak levels completed by this block.
        Raises DeviceError if encoding fails.
        """
        with self._lock:
            if self._finished:
                return []
            samples = self._resampler.process(to_mono(block))
            levels = [normalize_peak(db) for db in self._meter.process(samples)]
            self.peaks.extend(levels)
            self._sink.write(samples)
            return levels

    def finish(self) -> bytes:
        with self._lock:
            self._finished = True
            return self._sink.finish()
