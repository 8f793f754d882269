"""
Song Model

A recognized song plus when it was last heard. Identity (the id) never
changes; last-heard and newly-heard change only through the setters, which
write to the attached store before touching the in-memory value.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from difflib import SequenceMatcher
from enum import Enum
from typing import Any, Callable, Dict, Optional

SongId = str


def new_song_id() -> SongId:
    """Mint a fresh, globally unique song id."""
    return uuid.uuid4().hex


class ExternalLinkKey(str, Enum):
    APPLE_MUSIC = "apple-music"
    AUDD = "audd"
    SPOTIFY = "spotify"
    YOUTUBE = "youtube"
    SHAZAM = "shazam"
    MUSICBRAINZ = "musicbrainz"


def _is_subsequence(pattern: str, text: str) -> bool:
    it = iter(text)
    return all(ch in it for ch in pattern)


def fuzzy_score(choice: str, pattern: str) -> Optional[int]:
    """
    Score how well ``pattern`` matches ``choice`` (case-insensitive).

    None when the pattern characters do not appear in order. Otherwise
    contiguous runs score more than scattered characters, and runs starting
    at a word boundary get a bonus.
    """
    choice = choice.lower()
    pattern = pattern.lower().strip()
    if not pattern:
        return 0
    if not _is_subsequence(pattern, choice):
        return None

    score = 0
    for block in SequenceMatcher(None, choice, pattern, autojunk=False).get_matching_blocks():
        if block.size == 0:
            continue
        score += block.size * 16 + (block.size - 1) * 8
        if block.a == 0 or not choice[block.a - 1].isalnum():
            score += 8
    return score


@dataclass
class Song:
    id: SongId
    title: str
    artist: str
    album: str
    release_date: Optional[str] = None
    lyrics: Optional[str] = None
    playback_link: Optional[str] = None
    album_art_link: Optional[str] = None
    external_links: Dict[str, str] = field(default_factory=dict)
    last_heard: Optional[datetime] = None
    is_newly_heard: bool = False

    # Set by the SongStore that owns this song
    _persister: Optional[Callable[['Song', Dict[str, Any]], None]] = field(
        default=None, init=False, repr=False, compare=False
    )
    _on_changed: Optional[Callable[['Song'], None]] = field(
        default=None, init=False, repr=False, compare=False
    )

    def __hash__(self) -> int:
        return hash(self.id)

    def copy_term(self) -> str:
        """Text copied to the clipboard for this song."""
        return f"{self.artist} - {self.title}"

    def search_term(self) -> str:
        return f"{self.artist} {self.title}"

    def fuzzy_match(self, pattern: str) -> Optional[int]:
        """Score of this song against a search pattern, None if it does not match."""
        return fuzzy_score(self.search_term(), pattern)

    def set_last_heard(self, value: datetime) -> bool:
        """Returns whether the value changed. Raises StorageError if persisting fails."""
        return self._change(last_heard=value)

    def set_is_newly_heard(self, value: bool) -> bool:
        """Returns whether the value changed. Raises StorageError if persisting fails."""
        return self._change(is_newly_heard=bool(value))

    def _change(self, **changes) -> bool:
        changes = {k: v for k, v in changes.items() if getattr(self, k) != v}
        if not changes:
            return False
        # Durable first; a failure leaves the in-memory song untouched
        if self._persister is not None:
            self._persister(self, changes)
        for key, value in changes.items():
            setattr(self, key, value)
        if self._on_changed is not None:
            self._on_changed(self)
        return True

    def to_dict(self) -> Dict[str, Any]:
        """Serialized form shared by the database and JSON export."""
        return {
            'id': self.id,
            'title': self.title,
            'artist': self.artist,
            'album': self.album,
            'release_date': self.release_date,
            'external_links': dict(self.external_links),
            'album_art_link': self.album_art_link,
            'playback_link': self.playback_link,
            'lyrics': self.lyrics,
            'last_heard': self.last_heard.isoformat() if self.last_heard else None,
            'is_newly_heard': self.is_newly_heard,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Song':
        """
        Inverse of to_dict. A record without an id gets a fresh one.

        Raises:
            ValueError: a required field is missing or a value is invalid
        """
        missing = [k for k in ('title', 'artist', 'album') if data.get(k) is None]
        if missing:
            raise ValueError(f"Song record missing {', '.join(missing)}")

        last_heard = data.get('last_heard')
        if isinstance(last_heard, str):
            last_heard = datetime.fromisoformat(last_heard)

        return cls(
            id=data.get('id') or new_song_id(),
            title=data['title'],
            artist=data['artist'],
            album=data['album'],
            release_date=data.get('release_date'),
            lyrics=data.get('lyrics'),
            playback_link=data.get('playback_link'),
            album_art_link=data.get('album_art_link'),
            external_links=dict(data.get('external_links') or {}),
            last_heard=last_heard,
            is_newly_heard=bool(data.get('is_newly_heard', False)),
        )
