"""
History Coordinator

Turns successful recognitions into song history entries: a song already in
the store is touched, anything else is inserted as newly heard.
"""

from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from audio_recognition.base import SongMetadata
from audio_recognition.errors import NotFound, StorageError
from audio_recognition.session import RecognizeSession, SessionState, SessionStateKind
from logging_config import get_logger
from .song import Song, SongId, new_song_id
from .store import SongStore

logger = get_logger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class HistoryCoordinator:
    def __init__(self, store: SongStore, session: Optional[RecognizeSession] = None, clock: Callable[[], datetime] = _now):
        self.store = store
        self._clock = clock
        self._recognized_observers: List[Callable[[Song, bool], None]] = []
        self._error_observers: List[Callable[[StorageError], None]] = []
        if session is not None:
            session.connect_state_changed(self._on_state_changed)

    def connect_song_recognized(self, callback: Callable[[Song, bool], None]) -> None:
        """callback(song, is_new) after each recognition is stored."""
        self._recognized_observers.append(callback)

    def connect_error(self, callback: Callable[[StorageError], None]) -> None:
        self._error_observers.append(callback)

    def record(self, metadata: SongMetadata) -> Tuple[Song, bool]:
        """
        Store one recognition. Returns (song, is_new).

        Raises:
            StorageError: the store could not be written
        """
        heard_at = self._clock()
        existing = self.store.find(metadata.title, metadata.artist, metadata.album)
        if existing is not None:
            self.store.touch(existing.id, heard_at, newly_heard=True)
            logger.info(f"Heard again: {existing.copy_term()}")
            song, is_new = existing, False
        else:
            song = Song(
                id=new_song_id(),
                title=metadata.title,
                artist=metadata.artist,
                album=metadata.album,
                release_date=metadata.release_date,
                lyrics=metadata.lyrics,
                playback_link=metadata.playback_link,
                album_art_link=metadata.album_art_link,
                external_links=dict(metadata.external_links),
                last_heard=heard_at,
                is_newly_heard=True,
            )
            self.store.insert(song)
            logger.info(f"New song: {song.copy_term()}")
            is_new = True

        for observer in list(self._recognized_observers):
            try:
                observer(song, is_new)
            except Exception as e:
                logger.error(f"Song recognized callback error: {e}")
        return song, is_new

    def acknowledge(self, song_id: SongId) -> bool:
        """
        Clear the newly-heard flag. Returns whether it was set.

        Raises:
            NotFound, StorageError
        """
        song = self.store.get(song_id)
        if song is None:
            raise NotFound(song_id)
        return song.set_is_newly_heard(False)

    def search(self, query: str) -> List[Tuple[Song, int]]:
        return self.store.search(query)

    def forget(self, song_id: SongId) -> Song:
        return self.store.remove(song_id)

    def _on_state_changed(self, state: SessionState) -> None:
        if state.kind != SessionStateKind.SUCCEEDED:
            return
        try:
            self.record(state.metadata)
        except StorageError as e:
            logger.error(f"Could not save recognized song: {e}")
            for observer in list(self._error_observers):
                try:
                    observer(e)
                except Exception as cb_error:
                    logger.error(f"Error callback failed: {cb_error}")
