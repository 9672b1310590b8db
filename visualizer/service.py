"""
LED Visualizer bridge service (led-visualizer)

Logs a Spotify user in via OAuth, keeps their tokens fresh in SQLite, polls
what they are playing and publishes a JSON snapshot (with album-art palette)
to an MQTT topic for the LED device.

Routes:
    GET /auth/login              redirect to Spotify
    GET /auth/callback           finish OAuth, remember the active user
    GET /api/currently-playing   session user's playback
    GET /api/audio-features      session user's current track features
    GET /api/device/data         active user's snapshot (no auth, always 200)
    GET /status                  service / poller / broker state
"""

import hashlib
import json
import logging
import secrets

from aiohttp import web
from aiohttp_session import get_session, setup as setup_session
from aiohttp_session.cookie_storage import EncryptedCookieStorage

from .errors import (
    AuthError, FetchError, OAuthError, ProviderError, RateLimited, ReauthRequired,
    StateMismatch, TokenNotFound, TransientAuthError,
)
from .lib.config import cfg, cfg_bool, cfg_float, cfg_int
from .lib.service_base import ServiceBase
from .lib.transport import create_publisher
from .poller import ActiveUser, Poller
from .spotify.auth import DEFAULT_SKEW, TokenManager
from .spotify.oauth import (
    ACCOUNTS_URL, DEFAULT_SCOPES, SpotifyOAuth, generate_code_challenge,
    generate_code_verifier,
)
from .spotify.playback import API_URL, PlaybackSnapshot, SpotifyClient
from .spotify.tokens import TokenStore

log = logging.getLogger(__name__)

SESSION_COOKIE = "visualizer_session"
SESSION_MAX_AGE = 60 * 60 * 24 * 7  # one week
NOT_PLAYING = {"isPlaying": False, "features": None}


def _json_error(exc_class, message):
    return exc_class(text=json.dumps({"error": message}), content_type="application/json")


class VisualizerService(ServiceBase):
    """Spotify → MQTT bridge for the LED visualizer."""

    id = "visualizer"
    name = "LED Visualizer"
    port = 3000

    def __init__(self, publisher=None):
        super().__init__()
        self.host = cfg("http", "host", default=self.host)
        self.port = cfg_int("http", "port", default=self.port)
        self.home_url = cfg("http", "home_url", default="/")

        self.client_id = cfg("spotify", "client_id", default="")
        self.client_secret = cfg("spotify", "client_secret")
        self.redirect_uri = cfg("spotify", "redirect_uri", default="")
        self.scopes = cfg("spotify", "scopes", default=DEFAULT_SCOPES)
        self.audio_features_enabled = cfg_bool("spotify", "audio_features", default=False)

        self.store = TokenStore(cfg("database", "path", default="./db/visualizer.db"))
        self.publisher = publisher or create_publisher()
        self.active_user = ActiveUser(cfg("spotify", "user_id"))
        self.poll_enabled = cfg_bool("poll", "enabled", default=True)

        # Built once the HTTP session exists (on_start)
        self.oauth: SpotifyOAuth | None = None
        self.spotify: SpotifyClient | None = None
        self.tokens: TokenManager | None = None
        self.poller: Poller | None = None

    # -- ServiceBase hooks --

    def setup_app(self, app):
        secret = cfg("session", "secret", default="")
        key = hashlib.sha256(secret.encode()).digest()
        setup_session(app, EncryptedCookieStorage(
            key, cookie_name=SESSION_COOKIE, max_age=SESSION_MAX_AGE, httponly=True))

    def add_routes(self, app):
        app.router.add_get('/', self._handle_root)
        app.router.add_get('/auth/login', self._handle_login)
        app.router.add_get('/auth/callback', self._handle_callback)
        app.router.add_get('/api/currently-playing', self._handle_currently_playing)
        app.router.add_get('/api/audio-features', self._handle_audio_features)
        app.router.add_get('/api/device/data', self._handle_device_data)

    async def on_start(self):
        await self.store.init()

        self.oauth = SpotifyOAuth(
            self.http_session, self.client_id, self.client_secret, self.redirect_uri,
            accounts_url=cfg("spotify", "accounts_url", default=ACCOUNTS_URL))
        self.spotify = SpotifyClient(
            self.http_session, api_url=cfg("spotify", "api_url", default=API_URL))
        self.tokens = TokenManager(
            self.store, self.oauth,
            skew=cfg_float("spotify", "refresh_skew", default=DEFAULT_SKEW))
        self.poller = Poller(
            self.tokens, self.spotify, self.publisher, self.active_user,
            session=self.http_session,
            interval=cfg_float("poll", "interval", default=3),
            palette_enabled=cfg_bool("palette", "enabled", default=True),
            palette_colors=cfg_int("palette", "colors", default=5),
        )

        await self.publisher.start()
        if self.poll_enabled:
            self.poller.start()

        log.info("Visualizer ready (auth: %s, publish: %s, active user: %s)",
                 "PKCE" if self.oauth.uses_pkce else "client secret",
                 self.publisher.mode, self.active_user.user_id or "none")

    async def on_stop(self):
        if self.poller:
            await self.poller.stop()
        await self.publisher.stop()

    async def handle_status(self) -> dict:
        return {
            'service': self.id,
            'active_user': self.active_user.user_id,
            'poller': self.poller.status() if self.poller else None,
            'publisher': self.publisher.status(),
        }

    # -- OAuth routes --

    async def _handle_root(self, request):
        return web.Response(text="Spotify LED Visualizer Server is running!")

    async def _handle_login(self, request):
        """Start the authorization-code flow: remember state, redirect to Spotify."""
        session = await get_session(request)
        state = secrets.token_urlsafe(16)
        session['oauth_state'] = state

        challenge = None
        if self.oauth.uses_pkce:
            verifier = generate_code_verifier()
            challenge = generate_code_challenge(verifier)
            session['code_verifier'] = verifier

        auth_url = self.oauth.authorize_url(state, self.scopes, code_challenge=challenge)
        log.info("OAuth: redirecting to Spotify (redirect_uri=%s)", self.redirect_uri)
        raise web.HTTPFound(auth_url)

    @staticmethod
    def _check_state(expected, received):
        if not expected or not received or not secrets.compare_digest(expected.encode(), received.encode()):
            raise StateMismatch("OAuth state missing or does not match")

    async def _handle_callback(self, request):
        """Handle OAuth callback from Spotify: exchange code, save tokens."""
        session = await get_session(request)
        expected = session.pop('oauth_state', None)
        verifier = session.pop('code_verifier', None)

        error = request.query.get('error')
        if error:
            log.warning("OAuth: Spotify returned error %s", error)
            return web.Response(text=f'Spotify authorization failed: {error}', status=400)

        try:
            self._check_state(expected, request.query.get('state'))
        except StateMismatch as e:
            log.warning("OAuth: %s", e)
            return web.Response(text='State mismatch. Please start the login again.', status=400)

        code = request.query.get('code', '')
        if not code:
            return web.Response(text='Missing authorization code', status=400)

        try:
            log.info("OAuth: exchanging authorization code")
            token_data = await self.oauth.exchange_code(code, verifier)
            if not token_data.get('refresh_token'):
                return web.Response(text='No refresh token received', status=502)
            profile = await self.spotify.current_user(token_data['access_token'])
        except (OAuthError, FetchError) as e:
            log.error("OAuth callback failed: %s", e)
            return web.Response(text=f'Spotify authentication failed: {e}', status=502)

        user_id = profile['id']
        await self.tokens.save_grant(user_id, token_data)
        self.active_user.set(user_id)
        session['user_id'] = user_id
        log.info("OAuth: user %s authenticated", user_id)
        raise web.HTTPFound(self.home_url)

    # -- API routes --

    async def _session_token(self, request):
        """Valid access token for the session's user, or an HTTP error."""
        session = await get_session(request)
        user_id = session.get('user_id')
        if not user_id:
            raise _json_error(web.HTTPUnauthorized, "Authentication required. Please log in.")

        try:
            return user_id, await self.tokens.get_valid_token(user_id)
        except (TokenNotFound, ReauthRequired) as e:
            log.warning("Session for %s invalidated: %s", user_id, e)
            session.invalidate()
            if isinstance(e, ReauthRequired):
                self.active_user.clear(user_id)
            raise _json_error(web.HTTPUnauthorized,
                              "Authentication invalid. Please log in again.")
        except TransientAuthError as e:
            log.warning("Token refresh for %s failed transiently: %s", user_id, e)
            raise _json_error(web.HTTPServiceUnavailable,
                              "Could not refresh Spotify session. Try again shortly.")

    def _fetch_error_response(self, user_id, e: FetchError, what: str):
        if isinstance(e, RateLimited):
            log.warning("Rate limited fetching %s for %s", what, user_id)
            return web.json_response(
                {"error": "Spotify API rate limit exceeded."}, status=429,
                headers={"Retry-After": str(e.retry_after)} if e.retry_after else None)
        if isinstance(e, ProviderError) and e.status_code == 401:
            return web.json_response(
                {"error": "Authentication error. Please log in again."}, status=401)
        log.error("Error fetching %s for %s: %s", what, user_id, e)
        return web.json_response({"error": f"Failed to fetch {what}."}, status=500)

    async def _handle_currently_playing(self, request):
        user_id, token = await self._session_token(request)
        try:
            snapshot = await self.spotify.current_playback(token)
        except FetchError as e:
            return self._fetch_error_response(user_id, e, "currently playing track")

        if not (snapshot.is_playing and snapshot.track):
            log.info("User %s is not currently playing anything", user_id)
            return web.json_response({"isPlaying": False})

        log.info("User %s is currently playing: %s", user_id, snapshot.track.name)
        return web.json_response({
            "isPlaying": True,
            "item": snapshot.track.to_dict(),
            "progress_ms": snapshot.progress_ms,
            "duration_ms": snapshot.duration_ms,
        })

    async def _handle_audio_features(self, request):
        user_id, token = await self._session_token(request)
        try:
            snapshot = await self.spotify.current_playback(token)
            if not (snapshot.is_playing and snapshot.track):
                return web.json_response(NOT_PLAYING)
            features = await self.spotify.audio_features(token, snapshot.track.id)
        except FetchError as e:
            return self._fetch_error_response(user_id, e, "audio features")

        if features is None:
            log.error("No audio features for track %s", snapshot.track.id)
            return web.json_response({"error": "Failed to retrieve audio features."}, status=500)
        return web.json_response({"isPlaying": True, "features": features})

    async def _handle_device_data(self, request):
        """Unauthenticated snapshot for the device; publishes as a side effect."""
        if not self.active_user:
            return web.json_response(NOT_PLAYING, headers=self._cors_headers())

        try:
            result = await self.poller.run_cycle()
            snapshot = result.snapshot or PlaybackSnapshot.not_playing()
            data = snapshot.to_dict()
            data["features"] = await self._device_features(snapshot)
        except Exception:
            log.exception("Device data request failed")
            data = dict(NOT_PLAYING)
        return web.json_response(data, headers=self._cors_headers())

    async def _device_features(self, snapshot):
        if not (self.audio_features_enabled and snapshot.track and self.active_user):
            return None
        user_id = self.active_user.user_id
        try:
            token = await self.tokens.get_valid_token(user_id)
            return await self.spotify.audio_features(token, snapshot.track.id)
        except (FetchError, AuthError) as e:
            log.warning("Audio features unavailable for %s: %s", user_id, e)
            return None
