"""
Spotify Web API reads: current playback, profile, audio features.

current_playback() turns ``GET /me/player`` into an immutable
PlaybackSnapshot.  "Nothing playing" (204, empty body, no ``item``) is a
normal result, not an error; 429 raises RateLimited and every other failure
raises ProviderError.
"""

import asyncio
import logging
from dataclasses import dataclass, replace

import aiohttp

from ..errors import ProviderError, RateLimited
from ..palette import Palette

log = logging.getLogger(__name__)

API_URL = "https://api.spotify.com/v1"
REQUEST_TIMEOUT = 10

FEATURE_KEYS = (
    "id", "danceability", "energy", "key", "loudness", "mode", "speechiness",
    "acousticness", "instrumentalness", "liveness", "valence", "tempo",
    "time_signature",
)


@dataclass(frozen=True)
class Track:
    id: str
    name: str
    artists: tuple = ()
    album: str = ""
    album_art_url: str | None = None
    uri: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "artists": list(self.artists),
            "album": self.album,
            "albumArtUrl": self.album_art_url,
            "uri": self.uri,
        }


@dataclass(frozen=True)
class Device:
    name: str
    type: str
    volume_percent: int | None = None

    def to_dict(self) -> dict:
        return {"name": self.name, "type": self.type, "volume_percent": self.volume_percent}


@dataclass(frozen=True)
class PlaybackSnapshot:
    is_playing: bool = False
    progress_ms: int | None = None
    duration_ms: int | None = None
    timestamp: int | None = None
    track: Track | None = None
    palette: Palette | None = None
    device: Device | None = None
    shuffle_state: bool | None = None
    repeat_state: str | None = None

    @classmethod
    def not_playing(cls) -> "PlaybackSnapshot":
        return cls()

    @classmethod
    def from_api(cls, body: dict | None) -> "PlaybackSnapshot":
        """Build a snapshot from a ``/me/player`` response body."""
        if not body or not body.get("item"):
            return cls.not_playing()

        item = body["item"]
        album = item.get("album") or {}
        images = album.get("images") or []
        track = Track(
            id=item.get("id") or "",
            name=item.get("name") or "",
            artists=tuple(a.get("name", "") for a in item.get("artists") or []),
            album=album.get("name") or "",
            album_art_url=images[0].get("url") if images else None,
            uri=item.get("uri") or "",
        )

        device = None
        dev = body.get("device")
        if dev:
            device = Device(
                name=dev.get("name") or "",
                type=dev.get("type") or "",
                volume_percent=dev.get("volume_percent"),
            )

        return cls(
            is_playing=bool(body.get("is_playing")),
            progress_ms=body.get("progress_ms"),
            duration_ms=item.get("duration_ms"),
            timestamp=body.get("timestamp"),
            track=track,
            device=device,
            shuffle_state=body.get("shuffle_state"),
            repeat_state=body.get("repeat_state"),
        )

    def with_palette(self, palette: Palette | None) -> "PlaybackSnapshot":
        return replace(self, palette=palette)

    def to_dict(self) -> dict:
        """Wire format published to the broker and served to the device."""
        if self.track is None:
            return {"isPlaying": False}

        data = {
            "isPlaying": self.is_playing,
            "progress_ms": self.progress_ms,
            "duration_ms": self.duration_ms,
            "timestamp": self.timestamp,
            "track": self.track.to_dict(),
        }
        if self.palette is not None:
            data["palette"] = self.palette.to_list()
            data["dominantColor"] = list(self.palette.dominant)
        if self.device is not None:
            data["device"] = self.device.to_dict()
        if self.shuffle_state is not None:
            data["shuffle_state"] = self.shuffle_state
        if self.repeat_state is not None:
            data["repeat_state"] = self.repeat_state
        return data


class SpotifyClient:
    """Thin async wrapper over the Spotify Web API endpoints we read."""

    def __init__(self, session: aiohttp.ClientSession, api_url: str = API_URL):
        self._session = session
        self.api_url = api_url.rstrip("/")

    async def _get(self, access_token: str, path: str):
        """GET *path*; returns (status, json-or-None). Raises FetchError."""
        try:
            async with self._session.get(
                f"{self.api_url}{path}",
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=aiohttp.ClientTimeout(total=REQUEST_TIMEOUT),
            ) as resp:
                if resp.status == 429:
                    retry_after = resp.headers.get("Retry-After")
                    raise RateLimited(int(retry_after) if retry_after and retry_after.isdigit() else None)
                if resp.status == 204:
                    return resp.status, None
                if resp.status >= 300:
                    raise ProviderError(resp.status)
                try:
                    body = await resp.json(content_type=None)
                except ValueError:
                    log.warning("Spotify %s returned a non-JSON body", path)
                    body = None
                return resp.status, body
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ProviderError(0, f"Spotify API unreachable: {e}") from e

    async def current_playback(self, access_token: str) -> PlaybackSnapshot:
        _, body = await self._get(access_token, "/me/player")
        return PlaybackSnapshot.from_api(body if isinstance(body, dict) else None)

    async def current_user(self, access_token: str) -> dict:
        _, body = await self._get(access_token, "/me")
        if not isinstance(body, dict) or not body.get("id"):
            raise ProviderError(502, "Spotify profile response has no id")
        return body

    async def audio_features(self, access_token: str, track_id: str) -> dict | None:
        _, body = await self._get(access_token, f"/audio-features/{track_id}")
        if not isinstance(body, dict):
            return None
        return {key: body.get(key) for key in FEATURE_KEYS}
