"""
Shazam Recognition Module

Recognizes clips via ShazamIO. The clip is sent as Ogg/Vorbis, which
ShazamIO decodes itself (no FFmpeg dependency).
"""

import asyncio
from typing import Dict, Optional

import aiohttp
from shazamio import Shazam

import config
from logging_config import get_logger
from .base import FingerprintClient, SongMetadata, Verdict
from .capture import RecordedClip
from .errors import RequestError, RequestErrorKind

logger = get_logger(__name__)


class ShazamClient(FingerprintClient):
    """
    Recognition through the Shazam API (via shazamio).

    The shazamio client is created lazily so building a ShazamClient never
    touches the network.
    """

    name = "shazam"
    clip_subtype = "VORBIS"

    def __init__(self, language: Optional[str] = None, endpoint_country: Optional[str] = None):
        self.language = language or config.SHAZAM["language"]
        self.endpoint_country = endpoint_country or config.SHAZAM["endpoint_country"]
        self._shazam: Optional[Shazam] = None

    def _get_shazam(self) -> Shazam:
        if self._shazam is None:
            self._shazam = Shazam(language=self.language, endpoint_country=self.endpoint_country)
        return self._shazam

    async def close(self):
        """Drop the shazamio client. It opens a fresh aiohttp session per request."""
        self._shazam = None

    async def recognize(self, clip: RecordedClip) -> Verdict:
        logger.debug(f"Sending to ShazamIO ({len(clip.data) / 1024:.1f} KB, {clip.duration:.1f}s)...")

        try:
            result = await self._get_shazam().recognize(clip.data)
        except aiohttp.ClientResponseError as e:
            raise self._status_error(e.status, e.message) from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise RequestError(RequestErrorKind.NETWORK, f"Shazam request failed: {e}") from e
        except Exception as e:
            # shazamio raises its own types for undecodable audio and bad JSON
            raise RequestError(
                RequestErrorKind.MALFORMED_RESPONSE,
                f"Shazam recognition failed: {type(e).__name__}: {e}",
            ) from e

        verdict = self.parse_response(result)
        if verdict.is_match:
            logger.info(f"Shazam recognized: {verdict.metadata}")
        else:
            logger.debug("Shazam: no matches found")
        return verdict

    @staticmethod
    def _status_error(status: int, message: str) -> RequestError:
        if status == 429:
            return RequestError(RequestErrorKind.QUOTA_EXCEEDED, f"Shazam rate limit hit (HTTP 429): {message}")
        if status >= 500:
            return RequestError(RequestErrorKind.SERVICE_UNAVAILABLE, f"Shazam returned HTTP {status}: {message}")
        return RequestError(RequestErrorKind.NETWORK, f"Shazam request rejected (HTTP {status}): {message}")

    @classmethod
    def parse_response(cls, result) -> Verdict:
        """
        Turn a shazamio response dict into a Verdict.

        Raises:
            RequestError(MALFORMED_RESPONSE): the payload has an unexpected shape
        """
        try:
            return cls._parse(result)
        except (AttributeError, KeyError, IndexError, TypeError) as e:
            raise RequestError(
                RequestErrorKind.MALFORMED_RESPONSE,
                f"Unexpected Shazam payload shape: {type(e).__name__}: {e}",
            ) from e

    @classmethod
    def _parse(cls, result) -> Verdict:
        if not isinstance(result, dict):
            raise RequestError(RequestErrorKind.MALFORMED_RESPONSE, f"Unexpected Shazam payload: {type(result).__name__}")

        if not result.get('matches'):
            return Verdict.no_match()

        track = result.get('track')
        if not isinstance(track, dict) or not track.get('title'):
            raise RequestError(RequestErrorKind.MALFORMED_RESPONSE, "Shazam match without track details")

        song_meta = cls._song_section_metadata(track)

        images = track.get('images') or {}
        album_art_link = (
            images.get('coverarthq') or  # High-res first
            images.get('coverart') or
            (track.get('share') or {}).get('image')
        )

        return Verdict.match(SongMetadata(
            title=track['title'],
            artist=track.get('subtitle') or '',
            album=song_meta.get('Album') or '',
            release_date=song_meta.get('Released'),
            lyrics=cls._extract_lyrics(track),
            playback_link=cls._extract_preview_url(track),
            album_art_link=album_art_link,
            external_links=cls._extract_links(track),
        ))

    @staticmethod
    def _song_section_metadata(track: dict) -> Dict[str, str]:
        """Title -> text pairs from the SONG section (Album, Label, Released)."""
        values = {}
        for section in track.get('sections') or []:
            if section.get('type') != 'SONG':
                continue
            for item in section.get('metadata') or []:
                title, text = item.get('title'), item.get('text')
                if title and text:
                    values[title] = text
        return values

    @staticmethod
    def _extract_lyrics(track: dict) -> Optional[str]:
        for section in track.get('sections') or []:
            if section.get('type') == 'LYRICS':
                text_lines = section.get('text') or []
                if text_lines:
                    return '\n'.join(text_lines)
        return None

    @staticmethod
    def _extract_preview_url(track: dict) -> Optional[str]:
        """Audio preview lives in hub.actions as the action of type 'uri'."""
        for action in (track.get('hub') or {}).get('actions') or []:
            if action.get('type') == 'uri' and action.get('uri', '').startswith('http'):
                return action['uri']
        return None

    @staticmethod
    def _extract_links(track: dict) -> Dict[str, str]:
        links = {}
        if track.get('url'):
            links['shazam'] = track['url']

        hub = track.get('hub') or {}
        for option in hub.get('options') or []:
            for action in option.get('actions') or []:
                uri = action.get('uri', '')
                if 'music.apple.com' in uri and 'apple-music' not in links:
                    links['apple-music'] = uri

        # Spotify shows up in hub.providers (newer payloads) or track.providers
        providers = list(hub.get('providers') or []) + list(track.get('providers') or [])
        for provider in providers:
            if provider.get('type', '').lower() != 'spotify':
                continue
            for action in provider.get('actions') or []:
                uri = action.get('uri', '')
                if uri:
                    links['spotify'] = uri
                    break
            if 'spotify' in links:
                break
        return links
