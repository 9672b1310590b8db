"""Test configuration and fixtures"""

import base64
import json
from io import BytesIO

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer
from PIL import Image

from visualizer.lib import config
from visualizer.spotify.tokens import TokenStore


def make_artwork(size=32) -> bytes:
    """A small gradient PNG with plenty of distinct colours."""
    image = Image.new("RGB", (size, size))
    for x in range(size):
        for y in range(size):
            image.putpixel((x, y), (x * 255 // size, y * 255 // size, 96))
    buf = BytesIO()
    image.save(buf, "PNG")
    return buf.getvalue()


def playing_body(art_url="https://i.scdn.co/image/abc"):
    return {
        "is_playing": True,
        "progress_ms": 42000,
        "timestamp": 1700000000000,
        "shuffle_state": False,
        "repeat_state": "off",
        "device": {"name": "Kitchen", "type": "Speaker", "volume_percent": 55},
        "item": {
            "id": "track123",
            "name": "Test Song",
            "uri": "spotify:track:track123",
            "duration_ms": 210000,
            "artists": [{"name": "Test Artist"}, {"name": "Guest"}],
            "album": {
                "name": "Test Album",
                "images": [{"url": art_url, "width": 640}, {"url": "small", "width": 64}],
            },
        },
    }


class FakeSpotify:
    """In-process stand-in for accounts.spotify.com and api.spotify.com."""

    def __init__(self):
        self.token_responses = []       # queue of (status, body); default is a fresh token
        self.token_requests = []        # (form dict, Authorization header)
        self.player_status = 204
        self.player_body = None
        self.player_headers = {}
        self.player_auth = []           # Authorization headers seen on /me/player
        self.profile = {"id": "u1", "display_name": "User One"}
        self.features = {"id": "track123", "danceability": 0.7, "energy": 0.8,
                         "tempo": 120.0, "analysis_url": "ignored"}
        self.artwork = make_artwork()
        self.issued = 0

    def app(self):
        app = web.Application()
        app.router.add_post("/api/token", self._token)
        app.router.add_get("/v1/me/player", self._player)
        app.router.add_get("/v1/me", self._me)
        app.router.add_get("/v1/audio-features/{id}", self._features)
        app.router.add_get("/art.png", self._art)
        app.router.add_get("/art-stream.png", self._art_stream)
        return app

    async def _token(self, request):
        form = dict(await request.post())
        self.token_requests.append((form, request.headers.get("Authorization")))
        if self.token_responses:
            status, body = self.token_responses.pop(0)
        else:
            self.issued += 1
            status, body = 200, {"access_token": f"fresh-{self.issued}",
                                 "token_type": "Bearer", "expires_in": 3600}
            if form.get("grant_type") == "authorization_code":
                body["refresh_token"] = f"refresh-{self.issued}"
        return web.json_response(body, status=status)

    async def _player(self, request):
        self.player_auth.append(request.headers.get("Authorization"))
        if self.player_status == 204:
            return web.Response(status=204)
        return web.json_response(self.player_body, status=self.player_status,
                                 headers=self.player_headers)

    async def _me(self, request):
        return web.json_response(self.profile)

    async def _features(self, request):
        return web.json_response(self.features)

    async def _art(self, request):
        return web.Response(body=self.artwork, content_type="image/png")

    async def _art_stream(self, request):
        """Same artwork, chunked, without a Content-Length header."""
        resp = web.StreamResponse(headers={"Content-Type": "image/png"})
        resp.enable_chunked_encoding()
        await resp.prepare(request)
        for start in range(0, len(self.artwork), 256 * 1024):
            await resp.write(self.artwork[start:start + 256 * 1024])
        await resp.write_eof()
        return resp


class FakePublisher:
    mode = "fake"
    topic = "test/visualizer"

    def __init__(self, error=None):
        self.error = error
        self.messages = []
        self.calls = 0
        self.started = False

    async def start(self):
        self.started = True

    async def stop(self):
        self.started = False

    async def publish(self, topic, snapshot):
        self.calls += 1
        if self.error is not None:
            raise self.error
        self.messages.append((topic, json.loads(json.dumps(snapshot.to_dict()))))

    def status(self):
        return {"mode": self.mode, "published": len(self.messages)}


@pytest.fixture(autouse=True)
def clean_config(monkeypatch, tmp_path):
    """Isolate every test from the host's environment and config files."""
    for env_name in config.ENV_OVERRIDES.values():
        monkeypatch.delenv(env_name, raising=False)
    monkeypatch.setenv("VISUALIZER_CONFIG", str(tmp_path / "missing.json"))
    monkeypatch.chdir(tmp_path)
    config.reload_config()
    yield
    config._config = None


@pytest.fixture
def fake_spotify():
    return FakeSpotify()


@pytest.fixture
async def spotify_server(fake_spotify):
    server = TestServer(fake_spotify.app())
    await server.start_server()
    yield server
    await server.close()


@pytest.fixture
def accounts_url(spotify_server):
    return str(spotify_server.make_url("/")).rstrip("/")


@pytest.fixture
def api_url(spotify_server):
    return str(spotify_server.make_url("/v1"))


@pytest.fixture
async def http_session():
    async with aiohttp.ClientSession() as session:
        yield session


@pytest.fixture
async def store(tmp_path):
    token_store = TokenStore(str(tmp_path / "db" / "tokens.db"))
    await token_store.init()
    return token_store


@pytest.fixture
def fake_publisher():
    return FakePublisher()


@pytest.fixture
def basic_auth_header():
    def _header(client_id, secret):
        raw = base64.b64encode(f"{client_id}:{secret}".encode()).decode()
        return f"Basic {raw}"
    return _header
