"""
Now-playing poll loop.

Every ``poll.interval`` seconds (plus once immediately at start) one cycle
runs for the active user:

    IDLE → FETCHING_TOKEN → FETCHING_PLAYBACK → EXTRACTING_PALETTE → PUBLISHING → IDLE

Each stage's failure is captured in the returned CycleResult and logged;
the loop itself never dies.  Token or playback failures degrade to a
"not playing" snapshot, which is still published.  Cycles never overlap:
a tick that finds one in flight is skipped.
"""

import asyncio
import enum
import logging
import time
from dataclasses import dataclass

from .errors import (
    AuthError, FetchError, PublishError, RateLimited, ReauthRequired, VisualizerError,
)
from .palette import fetch_palette
from .spotify.playback import PlaybackSnapshot

log = logging.getLogger(__name__)

DEFAULT_INTERVAL = 3  # seconds between now-playing polls


class Stage(str, enum.Enum):
    IDLE = "idle"
    FETCHING_TOKEN = "fetching_token"
    FETCHING_PLAYBACK = "fetching_playback"
    EXTRACTING_PALETTE = "extracting_palette"
    PUBLISHING = "publishing"


@dataclass
class CycleResult:
    stage: Stage
    snapshot: PlaybackSnapshot | None = None
    error: Exception | None = None
    published: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


class ActiveUser:
    """The single user whose playback this deployment mirrors.

    One writer (the OAuth callback), several readers (poll loop, device
    endpoint).  Passed explicitly rather than kept as module state.
    """

    def __init__(self, user_id: str | None = None):
        self.user_id = user_id or None
        self.since = time.time() if self.user_id else None

    def set(self, user_id: str):
        if user_id != self.user_id:
            log.info("Active user is now %s", user_id)
        self.user_id = user_id
        self.since = time.time()

    def clear(self, user_id: str | None = None):
        """Forget the active user (only if it is *user_id*, when given)."""
        if user_id is None or user_id == self.user_id:
            if self.user_id:
                log.warning("Active user %s cleared", self.user_id)
            self.user_id = None
            self.since = None

    def __bool__(self):
        return self.user_id is not None


class Poller:
    """Orchestrates token → playback → palette → publish for the active user."""

    def __init__(self, tokens, spotify, publisher, active_user: ActiveUser, *,
                 session=None, interval: float = DEFAULT_INTERVAL,
                 palette_enabled: bool = True, palette_colors: int = 5):
        self.tokens = tokens
        self.spotify = spotify
        self.publisher = publisher
        self.active_user = active_user
        self.session = session
        self.interval = interval
        self.palette_enabled = palette_enabled
        self.palette_colors = palette_colors

        self.state = Stage.IDLE
        self._cycle_lock = asyncio.Lock()
        self._task: asyncio.Task | None = None
        self._last_art_url = None
        self._last_palette = None

        self.cycles = 0
        self.skipped = 0
        self.failures: dict[str, int] = {}
        self.last_published = None
        self.last_snapshot: PlaybackSnapshot | None = None

    # -- Lifecycle --

    def start(self):
        if self._task and not self._task.done():
            return
        self._task = asyncio.create_task(self._poll_loop())
        log.info("Poll loop started (every %gs)", self.interval)

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _poll_loop(self):
        """Tick on a fixed-rate schedule; overruns skip the missed slots."""
        loop = asyncio.get_running_loop()
        next_at = loop.time()
        try:
            while True:
                await self.tick()
                next_at += self.interval
                now = loop.time()
                if next_at < now:
                    next_at = now
                await asyncio.sleep(next_at - now)
        except asyncio.CancelledError:
            return

    async def tick(self) -> CycleResult | None:
        """Run one cycle unless one is already in flight."""
        if self._cycle_lock.locked():
            self.skipped += 1
            log.debug("Previous cycle still running, skipping tick")
            return None
        try:
            return await self.run_cycle()
        except Exception:
            # stage failures are handled inside run_cycle
            log.exception("Unexpected poll cycle failure")
            return None

    # -- One cycle --

    async def run_cycle(self, publish: bool = True) -> CycleResult:
        """Run (or wait for, then run) one full cycle for the active user."""
        async with self._cycle_lock:
            try:
                return await self._run_stages(publish)
            finally:
                self.state = Stage.IDLE

    async def _run_stages(self, publish: bool) -> CycleResult:
        user_id = self.active_user.user_id
        if not user_id:
            log.debug("No active user, nothing to poll")
            return CycleResult(Stage.IDLE)

        self.cycles += 1
        failure = None

        self.state = Stage.FETCHING_TOKEN
        try:
            token = await self.tokens.get_valid_token(user_id)
        except AuthError as e:
            failure = self._record(Stage.FETCHING_TOKEN, user_id, e)
            token = None
            if isinstance(e, ReauthRequired):
                self.active_user.clear(user_id)

        snapshot = PlaybackSnapshot.not_playing()
        if token is not None:
            self.state = Stage.FETCHING_PLAYBACK
            try:
                snapshot = await self.spotify.current_playback(token)
            except FetchError as e:
                failure = self._record(Stage.FETCHING_PLAYBACK, user_id, e)

        if self.palette_enabled and snapshot.track and snapshot.track.album_art_url:
            self.state = Stage.EXTRACTING_PALETTE
            snapshot = snapshot.with_palette(await self._palette_for(snapshot.track.album_art_url))

        self.last_snapshot = snapshot
        result = CycleResult(
            failure[0] if failure else Stage.IDLE, snapshot, failure[1] if failure else None)

        if publish:
            self.state = Stage.PUBLISHING
            try:
                await self.publisher.publish(self.publisher.topic, snapshot)
            except PublishError as e:
                stage, err = self._record(Stage.PUBLISHING, user_id, e)
                if result.ok:
                    result.stage, result.error = stage, err
            else:
                result.published = True
                self.last_published = time.time()

        return result

    async def _palette_for(self, url: str):
        """Palette for *url*; reuses the previous one while the art is unchanged."""
        if url == self._last_art_url and self._last_palette is not None:
            return self._last_palette
        if self.session is None:
            return None
        palette = await fetch_palette(self.session, url, self.palette_colors)
        self._last_art_url = url
        self._last_palette = palette
        return palette

    def _record(self, stage: Stage, user_id: str, error: VisualizerError):
        self.failures[stage.value] = self.failures.get(stage.value, 0) + 1
        if isinstance(error, RateLimited):
            log.warning("[%s] user=%s rate limited by Spotify (retry after %ss)",
                        stage.value, user_id, error.retry_after)
        else:
            status = getattr(error, "status_code", None) or getattr(error, "status", None)
            log.error("[%s] user=%s status=%s %s: %s", stage.value, user_id,
                      status, error.__class__.__name__, error)
        return stage, error

    def status(self) -> dict:
        return {
            "state": self.state.value,
            "interval": self.interval,
            "active_user": self.active_user.user_id,
            "active_since": self.active_user.since,
            "cycles": self.cycles,
            "skipped": self.skipped,
            "failures": dict(self.failures),
            "last_published": self.last_published,
        }
