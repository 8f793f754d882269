"""
Earshot - identify the song that is playing

Command-line front end: listen, browse history, search, manage devices.
"""

import argparse
import asyncio
import sys
from typing import List, Optional

from config import AUDIO_RECOGNITION, DEBUG, STORAGE, VERSION
from logging_config import setup_logging, get_logger
from settings import get_preferred_device_id, set_preferred_device_id
from system_utils.helpers import cancel_background_tasks, shutdown_daemon_executor

logger = get_logger(__name__)

LEVEL_BAR_WIDTH = 30


def _device_from_config(value) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


def _print_level(level: float) -> None:
    filled = int(round(level * LEVEL_BAR_WIDTH))
    bar = "#" * filled + " " * (LEVEL_BAR_WIDTH - filled)
    sys.stdout.write(f"\r  [{bar}]")
    sys.stdout.flush()


def _format_song(song) -> str:
    marker = "*" if song.is_newly_heard else " "
    heard = song.last_heard.astimezone().strftime("%Y-%m-%d %H:%M") if song.last_heard else "never"
    album = f" [{song.album}]" if song.album else ""
    return f"{marker} {song.id}  {song.copy_term()}{album}  (last heard {heard})"


def _open_store():
    from library import SongStore
    return SongStore(STORAGE["database"])


async def listen(device_id: Optional[int], provider: str, duration: Optional[float]) -> int:
    """Run one listen attempt and store the result. Returns an exit code."""
    from audio_recognition import RecognizeSession, SessionStateKind, create_fingerprint_client
    from library import HistoryCoordinator

    store = _open_store()
    session = RecognizeSession(
        create_fingerprint_client(provider),
        listen_timeout=duration if duration is not None else AUDIO_RECOGNITION["listen_timeout"],
    )
    history = HistoryCoordinator(store, session)
    finished = asyncio.Event()
    outcome = {"code": 1}

    def on_state(state) -> None:
        if state.kind == SessionStateKind.LISTENING:
            print(f"Listening (up to {session.listen_timeout:.0f}s, Ctrl+C to cancel)...")
        elif state.kind == SessionStateKind.RECOGNIZING:
            print("\nRecognizing...")
        elif state.kind == SessionStateKind.NO_MATCH_FOUND:
            print("No match found.")
            outcome["code"] = 2
        elif state.kind == SessionStateKind.FAILED:
            print(f"\nFailed: {state.error.user_message}")
            logger.error(f"Recognition failed: {state.error}")
        if state.is_terminal:
            finished.set()

    def on_recognized(song, is_new: bool) -> None:
        print(f"{'New song' if is_new else 'Heard again'}: {song.copy_term()}")
        if song.album:
            print(f"  Album: {song.album}")
        for key, url in sorted(song.external_links.items()):
            print(f"  {key}: {url}")
        outcome["code"] = 0

    def on_error(error) -> None:
        print(f"Recognized, but {error.user_message.lower()}")

    session.connect_state_changed(on_state)
    session.connect_peak(_print_level)
    history.connect_song_recognized(on_recognized)
    history.connect_error(on_error)

    try:
        session.listen(device_id)
        await finished.wait()
    finally:
        await session.close()
        store.close()
        await cancel_background_tasks()
    return outcome["code"]


def show_history(recent: bool, new_only: bool) -> int:
    store = _open_store()
    try:
        songs = store.most_recently_heard() if recent else store.all()
        if new_only:
            songs = [s for s in songs if s.is_newly_heard]
        if not songs:
            print("No songs yet.")
        for song in songs:
            print(_format_song(song))
    finally:
        store.close()
    return 0


def search(query: str) -> int:
    store = _open_store()
    try:
        results = store.search(query)
        if not results:
            print(f"Nothing matches {query!r}.")
            return 1
        for song, score in results:
            print(f"{score:5d} {_format_song(song)}")
    finally:
        store.close()
    return 0


def devices(set_default: Optional[int]) -> int:
    from audio_recognition.capture import is_available, list_input_devices

    if set_default is not None:
        set_preferred_device_id(set_default if set_default >= 0 else None)
        print(f"Preferred input device: {set_default if set_default >= 0 else 'system default'}")
        return 0

    if not is_available():
        print("Audio capture unavailable (PortAudio library not found).")
        return 1

    preferred = _device_from_config(get_preferred_device_id())
    for device in list_input_devices():
        flags = []
        if device["is_default"]:
            flags.append("default")
        if device["index"] == preferred:
            flags.append("preferred")
        if device["is_loopback"]:
            flags.append("loopback")
        suffix = f"  ({', '.join(flags)})" if flags else ""
        print(f"{device['index']:3d}  {device['name']} [{device['api']}, {device['channels']}ch]{suffix}")
    return 0


def export_history(path: str) -> int:
    store = _open_store()
    try:
        count = store.export_json(path)
    finally:
        store.close()
    print(f"Exported {count} songs to {path}")
    return 0


def import_history(path: str) -> int:
    store = _open_store()
    try:
        count = store.import_json(path)
    finally:
        store.close()
    print(f"Imported {count} songs from {path}")
    return 0


def forget(song_id: str) -> int:
    from library import HistoryCoordinator

    store = _open_store()
    try:
        song = HistoryCoordinator(store).forget(song_id)
    finally:
        store.close()
    print(f"Forgot {song.copy_term()}")
    return 0


def acknowledge(song_id: str) -> int:
    from library import HistoryCoordinator

    store = _open_store()
    try:
        HistoryCoordinator(store).acknowledge(song_id)
    finally:
        store.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="earshot", description="Earshot - identify the song that is playing")
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("listen", help="Record a clip and recognize it")
    p.add_argument("--device", type=int, default=None, help="Input device index (see 'devices')")
    p.add_argument("--provider", choices=["audd", "shazam"], default=None,
                   help="Recognition service (default from settings)")
    p.add_argument("--duration", type=float, default=None, help="Seconds to listen before recognizing")

    p = sub.add_parser("history", help="List recognized songs")
    p.add_argument("--recent", action="store_true", help="Most recently heard first")
    p.add_argument("--new", action="store_true", help="Only songs not yet acknowledged")

    p = sub.add_parser("search", help="Fuzzy search the history")
    p.add_argument("query")

    p = sub.add_parser("devices", help="List input devices")
    p.add_argument("--set-default", type=int, default=None, metavar="N",
                   help="Store N as the preferred input device (-1 clears)")

    p = sub.add_parser("export", help="Export the history to JSON")
    p.add_argument("path")

    p = sub.add_parser("import", help="Import songs from a JSON export")
    p.add_argument("path")

    p = sub.add_parser("forget", help="Remove a song from the history")
    p.add_argument("song_id")

    p = sub.add_parser("ack", help="Mark a song as seen")
    p.add_argument("song_id")

    return parser


def run(args: argparse.Namespace) -> int:
    if args.command == "listen":
        device_id = args.device if args.device is not None else _device_from_config(get_preferred_device_id())
        provider = args.provider or AUDIO_RECOGNITION["provider"]
        return asyncio.run(listen(device_id, provider, args.duration))
    if args.command == "history":
        return show_history(args.recent, args.new)
    if args.command == "search":
        return search(args.query)
    if args.command == "devices":
        return devices(args.set_default)
    if args.command == "export":
        return export_history(args.path)
    if args.command == "import":
        return import_history(args.path)
    if args.command == "forget":
        return forget(args.song_id)
    if args.command == "ack":
        return acknowledge(args.song_id)
    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    setup_logging(
        console_level=DEBUG.get("log_level", "INFO"),
        file_level="DEBUG" if DEBUG.get("log_detailed", False) else "INFO",
        console=DEBUG.get("log_to_console", False),
        log_file=DEBUG.get("log_file", "earshot.log"),
        max_bytes=DEBUG["log_rotation"]["max_bytes"],
        backup_count=DEBUG["log_rotation"]["backup_count"],
    )

    from audio_recognition.errors import RecognizerError

    try:
        return run(args)
    except KeyboardInterrupt:
        print("\nCancelled.")
        logger.info("Cancelled by user")
        return 130
    except RecognizerError as e:
        print(f"Error: {e.user_message}")
        logger.error(f"{args.command} failed: {e}")
        return 1
    except (OSError, ValueError) as e:
        print(f"Error: {e}")
        logger.error(f"{args.command} failed: {e}", exc_info=True)
        return 1
    finally:
        shutdown_daemon_executor()


if __name__ == "__main__":
    sys.exit(main())
