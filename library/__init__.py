"""
Song history: the Song model, its SQLite store and the coordinator that
feeds recognitions into it.
"""

from .song import ExternalLinkKey, Song, SongId, new_song_id
from .store import SongStore
from .history import HistoryCoordinator

__all__ = [
    'ExternalLinkKey',
    'Song',
    'SongId',
    'new_song_id',
    'SongStore',
    'HistoryCoordinator',
]
