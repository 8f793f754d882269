"""
Song Store

SQLite-backed, ordered collection of songs keyed by id. Every mutation is
written to the database first; the in-memory view and observers are only
updated after the write committed.
"""

import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

from audio_recognition.errors import DuplicateId, NotFound, StorageError
from logging_config import get_logger
from .song import Song, SongId

logger = get_logger(__name__)

CURRENT_DB_VERSION = 2

ChangeCallback = Callable[[str, Song], None]

ADDED = "added"
REMOVED = "removed"
UPDATED = "updated"

_COLUMNS = (
    'id', 'title', 'artist', 'album', 'release_date', 'external_links',
    'album_art_link', 'playback_link', 'lyrics', 'last_heard', 'is_newly_heard',
)


def _open_database(path: Union[str, Path]) -> sqlite3.Connection:
    if str(path) != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    db = sqlite3.connect(str(path))
    db.row_factory = sqlite3.Row
    existing_version = db.execute("PRAGMA user_version").fetchone()[0]
    upgrade_database_if_needed(db, existing_version)
    return db


def upgrade_database_if_needed(db: sqlite3.Connection, existing_version: int) -> None:
    if existing_version >= CURRENT_DB_VERSION:
        return
    logger.info(f"Migrating song database from version {existing_version} to {CURRENT_DB_VERSION}")

    if existing_version <= 0:
        logger.debug("Migrate database version 1...")
        db.execute("PRAGMA journal_mode=WAL")
        db.executescript("""
            CREATE TABLE IF NOT EXISTS songs (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                title TEXT NOT NULL,
                artist TEXT NOT NULL,
                album TEXT NOT NULL,
                release_date TEXT,
                external_links TEXT NOT NULL DEFAULT '{}',
                album_art_link TEXT,
                playback_link TEXT,
                lyrics TEXT,
                last_heard TEXT,
                is_newly_heard BOOLEAN NOT NULL DEFAULT 0
            );
        """)
        db.execute("PRAGMA user_version=1")
        db.commit()

    if existing_version <= 1:
        logger.debug("Migrate database version 2...")
        db.executescript("""
            CREATE INDEX IF NOT EXISTS idx_songs_identity
                ON songs(title COLLATE NOCASE, artist COLLATE NOCASE, album COLLATE NOCASE);
        """)
        db.execute("PRAGMA user_version=2")
        db.commit()


def _to_column(key: str, value: Any) -> Any:
    if key == 'external_links':
        return json.dumps(value or {}, ensure_ascii=False)
    if key == 'last_heard':
        if isinstance(value, datetime):
            return value.isoformat()
        return value
    if key == 'is_newly_heard':
        return 1 if value else 0
    return value


def _song_to_row(song: Song) -> Tuple:
    data = song.to_dict()
    return tuple(_to_column(key, data[key]) for key in _COLUMNS)


def _row_to_song(row: sqlite3.Row) -> Song:
    data = {key: row[key] for key in _COLUMNS}
    data['external_links'] = json.loads(data['external_links'] or '{}')
    return Song.from_dict(data)


def _sort_time(song: Song) -> float:
    return song.last_heard.timestamp() if song.last_heard else float('-inf')


class SongStore:
    """
    Persisted song history.

    Single writer on the event loop thread. Observers registered with
    connect_items_changed() receive (change, song), change being one of
    "added", "removed" or "updated".
    """

    def __init__(self, path: Union[str, Path]):
        self.path = path
        try:
            self._db = _open_database(path)
            rows = self._db.execute(f"SELECT {', '.join(_COLUMNS)} FROM songs ORDER BY seq").fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Could not open song database {path}: {e}") from e

        self._songs: Dict[SongId, Song] = {}
        self._observers: List[ChangeCallback] = []
        for row in rows:
            try:
                song = _row_to_song(row)
            except (ValueError, TypeError) as e:
                logger.warning(f"Skipping unreadable song record {row['id']}: {e}")
                continue
            self._attach(song)
            self._songs[song.id] = song

        logger.info(f"Loaded {len(self._songs)} songs from {path}")

    def close(self) -> None:
        self._db.close()

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def connect_items_changed(self, callback: ChangeCallback) -> None:
        self._observers.append(callback)

    def _emit(self, change: str, song: Song) -> None:
        for observer in list(self._observers):
            try:
                observer(change, song)
            except Exception as e:
                logger.error(f"Items-changed callback error: {e}")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._songs)

    def __iter__(self) -> Iterator[Song]:
        return iter(list(self._songs.values()))

    def __contains__(self, song_id: object) -> bool:
        if isinstance(song_id, Song):
            song_id = song_id.id
        return song_id in self._songs

    def get(self, song_id: SongId) -> Optional[Song]:
        return self._songs.get(song_id)

    def all(self) -> List[Song]:
        """Songs in storage (insertion) order."""
        return list(self._songs.values())

    def most_recently_heard(self) -> List[Song]:
        return sorted(self._songs.values(), key=_sort_time, reverse=True)

    def find(self, title: str, artist: str, album: str) -> Optional[Song]:
        """Case-insensitive lookup by (title, artist, album)."""
        key = (title.casefold(), artist.casefold(), album.casefold())
        for song in self._songs.values():
            if (song.title.casefold(), song.artist.casefold(), song.album.casefold()) == key:
                return song
        return None

    def search(self, pattern: str) -> List[Tuple[Song, int]]:
        """
        Fuzzy search over "{artist} {title}".

        Best score first; equal scores put the most recently heard first.
        An empty pattern returns every song with score 0.
        """
        results = []
        for song in self._songs.values():
            score = song.fuzzy_match(pattern)
            if score is not None:
                results.append((song, score))
        results.sort(key=lambda item: (-item[1], -_sort_time(item[0])))
        return results

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def insert(self, song: Song) -> None:
        """
        Raises:
            DuplicateId: a song with this id is already stored
            StorageError: the database write failed
        """
        if song.id in self._songs:
            raise DuplicateId(song.id)
        placeholders = ', '.join('?' for _ in _COLUMNS)
        try:
            with self._db:
                self._db.execute(
                    f"INSERT INTO songs ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
                    _song_to_row(song),
                )
        except sqlite3.IntegrityError as e:
            raise DuplicateId(song.id) from e
        except sqlite3.Error as e:
            raise StorageError(f"Could not insert song {song.id}: {e}") from e

        self._attach(song)
        self._songs[song.id] = song
        logger.debug(f"Inserted song {song.id}: {song.copy_term()}")
        self._emit(ADDED, song)

    def touch(self, song_id: SongId, heard_at: datetime, newly_heard: bool = True) -> bool:
        """
        Update last-heard and newly-heard together in one write.

        Returns whether anything changed.

        Raises:
            NotFound: no song with this id
            StorageError: the database write failed
        """
        song = self._songs.get(song_id)
        if song is None:
            raise NotFound(song_id)
        return song._change(last_heard=heard_at, is_newly_heard=bool(newly_heard))

    def remove(self, song_id: SongId) -> Song:
        """
        Raises:
            NotFound: no song with this id
            StorageError: the database write failed
        """
        song = self._songs.get(song_id)
        if song is None:
            raise NotFound(song_id)
        try:
            with self._db:
                self._db.execute("DELETE FROM songs WHERE id = ?", (song_id,))
        except sqlite3.Error as e:
            raise StorageError(f"Could not remove song {song_id}: {e}") from e

        del self._songs[song_id]
        song._persister = None
        song._on_changed = None
        logger.debug(f"Removed song {song_id}")
        self._emit(REMOVED, song)
        return song

    def _attach(self, song: Song) -> None:
        song._persister = self._persist_changes
        song._on_changed = lambda s: self._emit(UPDATED, s)

    def _persist_changes(self, song: Song, changes: Dict[str, Any]) -> None:
        assignments = ', '.join(f"{key} = ?" for key in changes)
        values = [_to_column(key, value) for key, value in changes.items()]
        try:
            with self._db:
                cursor = self._db.execute(
                    f"UPDATE songs SET {assignments} WHERE id = ?", (*values, song.id)
                )
        except sqlite3.Error as e:
            raise StorageError(f"Could not update song {song.id}: {e}") from e
        if cursor.rowcount == 0:
            raise NotFound(song.id)

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------

    def export_json(self, path: Union[str, Path]) -> int:
        """Write every song to a JSON file. Returns the number written."""
        records = [song.to_dict() for song in self._songs.values()]
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(records, f, indent=2, ensure_ascii=False)
        logger.info(f"Exported {len(records)} songs to {path}")
        return len(records)

    def import_json(self, path: Union[str, Path]) -> int:
        """
        Insert songs from an export file, skipping ids already stored.

        Returns the number of songs imported.

        Raises:
            ValueError: the file is not a list of song records
            StorageError: a database write failed
        """
        with open(path, 'r', encoding='utf-8') as f:
            records = json.load(f)
        if not isinstance(records, list):
            raise ValueError(f"{path} does not contain a list of songs")

        imported = 0
        for record in records:
            song = Song.from_dict(record)
            if song.id in self._songs:
                logger.debug(f"Skipping already stored song {song.id}")
                continue
            self.insert(song)
            imported += 1
        logger.info(f"Imported {imported} of {len(records)} songs from {path}")
        return imported
