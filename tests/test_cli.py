"""
Tests for the earshot command-line front end
"""
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

import earshot
from library.song import Song, new_song_id
from library.store import SongStore


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = tmp_path / "cli.db"
    monkeypatch.setitem(earshot.STORAGE, "database", path)
    store = SongStore(path)
    store.insert(Song(
        id=new_song_id(), title="Radio Ga Ga", artist="Queen", album="The Works",
        last_heard=datetime(2024, 1, 1, tzinfo=timezone.utc), is_newly_heard=True,
    ))
    store.insert(Song(
        id=new_song_id(), title="Imagine", artist="John Lennon", album="Imagine",
        last_heard=datetime(2024, 1, 2, tzinfo=timezone.utc),
    ))
    store.close()
    return path


def test_parser_requires_command():
    with pytest.raises(SystemExit):
        earshot.build_parser().parse_args([])


def test_listen_arguments():
    args = earshot.build_parser().parse_args(["listen", "--device", "2", "--provider", "shazam", "--duration", "5"])
    assert (args.device, args.provider, args.duration) == (2, "shazam", 5.0)


def test_history_new_only(db_path, capsys):
    assert earshot.main(["history", "--new"]) == 0
    out = capsys.readouterr().out
    assert "Queen - Radio Ga Ga" in out
    assert "Imagine" not in out


def test_history_recent_order(db_path, capsys):
    earshot.main(["history", "--recent"])
    lines = capsys.readouterr().out.strip().splitlines()
    assert "Imagine" in lines[0]
    assert "Radio Ga Ga" in lines[1]


def test_search(db_path, capsys):
    assert earshot.main(["search", "quee"]) == 0
    out = capsys.readouterr().out
    assert "Radio Ga Ga" in out
    assert "Imagine" not in out
    assert earshot.main(["search", "zzz"]) == 1


def test_ack_and_forget(db_path, capsys):
    store = SongStore(db_path)
    song_id = store.find("Radio Ga Ga", "Queen", "The Works").id
    store.close()

    assert earshot.main(["ack", song_id]) == 0
    assert earshot.main(["forget", song_id]) == 0
    assert "Forgot Queen - Radio Ga Ga" in capsys.readouterr().out
    assert earshot.main(["forget", song_id]) == 1

    store = SongStore(db_path)
    assert len(store) == 1
    store.close()


def test_export_import(db_path, tmp_path, monkeypatch, capsys):
    export_path = tmp_path / "history.json"
    assert earshot.main(["export", str(export_path)]) == 0
    monkeypatch.setitem(earshot.STORAGE, "database", tmp_path / "fresh.db")
    assert earshot.main(["import", str(export_path)]) == 0
    assert "Imported 2 songs" in capsys.readouterr().out


def test_listen_dispatch(monkeypatch):
    listen = AsyncMock(return_value=0)
    monkeypatch.setattr(earshot, "listen", listen)
    monkeypatch.setattr(earshot, "get_preferred_device_id", lambda: 5)
    assert earshot.main(["listen", "--provider", "shazam", "--duration", "4"]) == 0
    listen.assert_awaited_once_with(5, "shazam", 4.0)
