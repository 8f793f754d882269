"""
Fingerprint Client Interface

A fingerprint client uploads one encoded clip and answers with a Verdict:
either a Match carrying song metadata, or NoMatch. Transport and service
failures are raised as RequestError.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Optional

from .capture import RecordedClip


@dataclass(frozen=True)
class SongMetadata:
    """Everything a recognition service tells us about a song."""
    title: str
    artist: str
    album: str
    release_date: Optional[str] = None
    lyrics: Optional[str] = None
    playback_link: Optional[str] = None
    album_art_link: Optional[str] = None
    external_links: Dict[str, str] = field(default_factory=dict)

    def __str__(self) -> str:
        return f"{self.artist} - {self.title}"


@dataclass(frozen=True)
class Verdict:
    """Answer from a recognition service. ``metadata`` is None for NoMatch."""
    metadata: Optional[SongMetadata] = None

    @classmethod
    def match(cls, metadata: SongMetadata) -> 'Verdict':
        return cls(metadata)

    @classmethod
    def no_match(cls) -> 'Verdict':
        return cls(None)

    @property
    def is_match(self) -> bool:
        return self.metadata is not None


class FingerprintClient(ABC):
    """Base class for recognition providers. Stateless across calls."""

    name: str = ""
    # Ogg codec this provider accepts ("OPUS" or "VORBIS")
    clip_subtype: str = "OPUS"

    @abstractmethod
    async def recognize(self, clip: RecordedClip) -> Verdict:
        """
        Submit a clip for recognition.

        Cancelling the awaiting task abandons the request.

        Raises:
            RequestError: the request failed before a verdict was available
        """

    async def close(self) -> None:
        """Release transport resources. Safe to call more than once."""


def create_fingerprint_client(name: str) -> FingerprintClient:
    """
    Build the client for a provider name from config.

    Raises:
        ValueError: unknown provider
    """
    key = (name or "").strip().lower()
    if key == "audd":
        from .audd import AudDClient
        return AudDClient()
    if key == "shazam":
        from .shazam import ShazamClient
        return ShazamClient()
    raise ValueError(f"Unknown recognition provider: {name!r}")
