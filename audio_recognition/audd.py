"""
AudD Recognition Module

Recognizes clips via the AudD HTTP API (https://docs.audd.io).
The API token is read from the AUDD_API_TOKEN environment variable; without
one AudD still answers a small number of requests per day.
"""

from typing import Optional
from urllib.parse import quote_plus

import requests

import config
from logging_config import get_logger
from system_utils.helpers import run_in_daemon_executor
from .base import FingerprintClient, SongMetadata, Verdict
from .capture import RecordedClip
from .errors import RequestError, RequestErrorKind

logger = get_logger(__name__)

# AudD error codes meaning "no token / token rejected / limit reached"
QUOTA_ERROR_CODES = {900, 901, 902}

RETURN_SOURCES = "apple_music,spotify,musicbrainz,lyrics"


class AudDClient(FingerprintClient):
    """Recognition through AudD. The blocking POST runs in the worker executor."""

    name = "audd"
    clip_subtype = "OPUS"

    def __init__(
        self,
        api_token: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.api_token = api_token if api_token is not None else config.AUDD["api_token"]
        self.base_url = base_url or config.AUDD["base_url"]
        self.timeout = timeout or config.AUDD["timeout"]
        self._session = requests.Session()

        if not self.api_token:
            logger.debug("AudD API token not set; requests are limited by AudD's free tier")

    async def close(self):
        self._session.close()

    async def recognize(self, clip: RecordedClip) -> Verdict:
        payload = await run_in_daemon_executor(self._post, clip)
        verdict = self.parse_response(payload)
        if verdict.is_match:
            logger.info(f"AudD recognized: {verdict.metadata}")
        else:
            logger.debug("AudD: no match")
        return verdict

    def _post(self, clip: RecordedClip) -> dict:
        """Blocking multipart upload. Returns the decoded JSON body."""
        data = {'return': RETURN_SOURCES}
        if self.api_token:
            data['api_token'] = self.api_token
        files = {'file': ('clip.ogg', clip.data, clip.mime_type.split(';')[0])}

        logger.debug(f"Sending to AudD ({len(clip.data) / 1024:.1f} KB, {clip.duration:.1f}s)...")

        try:
            response = self._session.post(self.base_url, data=data, files=files, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise RequestError(RequestErrorKind.NETWORK, f"AudD request timed out after {self.timeout}s") from e
        except requests.exceptions.RequestException as e:
            raise RequestError(RequestErrorKind.NETWORK, f"AudD request failed: {e}") from e

        if response.status_code == 429:
            raise RequestError(RequestErrorKind.QUOTA_EXCEEDED, "AudD rate limit hit (HTTP 429)")
        if response.status_code >= 500:
            raise RequestError(RequestErrorKind.SERVICE_UNAVAILABLE, f"AudD returned HTTP {response.status_code}")
        if response.status_code != 200:
            raise RequestError(RequestErrorKind.NETWORK, f"AudD request rejected (HTTP {response.status_code})")

        try:
            return response.json()
        except ValueError as e:
            raise RequestError(RequestErrorKind.MALFORMED_RESPONSE, f"AudD returned invalid JSON: {e}") from e

    @classmethod
    def parse_response(cls, payload) -> Verdict:
        """
        Turn an AudD JSON body into a Verdict.

        Raises:
            RequestError: the service reported an error or the body is malformed
        """
        try:
            return cls._parse(payload)
        except (AttributeError, KeyError, IndexError, TypeError) as e:
            raise RequestError(
                RequestErrorKind.MALFORMED_RESPONSE,
                f"Unexpected AudD payload shape: {type(e).__name__}: {e}",
            ) from e

    @classmethod
    def _parse(cls, payload) -> Verdict:
        if not isinstance(payload, dict):
            raise RequestError(RequestErrorKind.MALFORMED_RESPONSE, f"Unexpected AudD payload: {type(payload).__name__}")

        status = payload.get('status')
        if status == 'error':
            error = payload.get('error') or {}
            code = error.get('error_code')
            message = error.get('error_message', 'Unknown error')
            if code in QUOTA_ERROR_CODES:
                raise RequestError(RequestErrorKind.QUOTA_EXCEEDED, f"AudD error {code}: {message}")
            raise RequestError(RequestErrorKind.SERVICE_UNAVAILABLE, f"AudD error {code}: {message}")

        if status != 'success':
            raise RequestError(RequestErrorKind.MALFORMED_RESPONSE, f"Unknown AudD status: {status!r}")

        result = payload.get('result')
        if result is None:
            return Verdict.no_match()
        if not isinstance(result, dict) or not result.get('title'):
            raise RequestError(RequestErrorKind.MALFORMED_RESPONSE, "AudD result without a title")

        return Verdict.match(cls._to_metadata(result))

    @staticmethod
    def _to_metadata(result: dict) -> SongMetadata:
        title = result['title']
        artist = result.get('artist') or ''
        apple_music = result.get('apple_music') or {}
        spotify = result.get('spotify') or {}

        links = {}
        if result.get('song_link'):
            links['audd'] = result['song_link']
        links['youtube'] = f"https://www.youtube.com/results?search_query={quote_plus(f'{artist} - {title}')}"
        if apple_music.get('url'):
            links['apple-music'] = apple_music['url']
        spotify_url = (spotify.get('external_urls') or {}).get('spotify')
        if spotify_url:
            links['spotify'] = spotify_url
        musicbrainz = result.get('musicbrainz') or []
        if musicbrainz and musicbrainz[0].get('id'):
            links['musicbrainz'] = f"https://musicbrainz.org/recording/{musicbrainz[0]['id']}"

        # Album art: Spotify gives ready URLs, Apple Music a {w}x{h} template
        album_art_link = None
        spotify_images = (spotify.get('album') or {}).get('images') or []
        if spotify_images:
            album_art_link = spotify_images[0].get('url')
        if not album_art_link:
            artwork = apple_music.get('artwork') or {}
            if artwork.get('url'):
                album_art_link = (
                    artwork['url']
                    .replace('{w}', str(artwork.get('width', 600)))
                    .replace('{h}', str(artwork.get('height', 600)))
                )

        playback_link = None
        previews = apple_music.get('previews') or []
        if previews:
            playback_link = previews[0].get('url')
        if not playback_link:
            playback_link = spotify.get('preview_url')

        lyrics = (result.get('lyrics') or {}).get('lyrics')

        return SongMetadata(
            title=title,
            artist=artist,
            album=result.get('album') or '',
            release_date=result.get('release_date'),
            lyrics=lyrics,
            playback_link=playback_link,
            album_art_link=album_art_link,
            external_links=links,
        )
