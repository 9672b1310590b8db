"""
MQTT publishing of playback snapshots to the LED visualizer.

Two strategies, chosen per deployment via ``mqtt.mode``:

  ephemeral   connect → publish → disconnect on every call, bounded by a
              hard timeout (PublishTimeout when exceeded).
  persistent  one long-lived connection kept up by a background task with
              exponential backoff; publish() fails fast with NotConnected
              while the broker is down.

Usage:
    publisher = create_publisher()
    await publisher.start()
    await publisher.publish(publisher.topic, snapshot)
    await publisher.stop()

Delivery is at-most-once (QoS 0) or at-least-once (QoS 1).  A failed
publish is never retried; the next poll cycle supersedes it.
"""

import asyncio
import json
import logging
import ssl
import time
import urllib.parse

import aiomqtt

from ..errors import BrokerRejected, NotConnected, PublishTimeout
from .config import cfg, cfg_float, cfg_int

logger = logging.getLogger(__name__)

DEFAULT_TOPIC = "spotify/visualizer/data"
DEFAULT_TIMEOUT = 10.0
MIN_BACKOFF = 1
MAX_BACKOFF = 30


def parse_broker_url(url: str, port: int | None = None) -> tuple:
    """Split a broker URL into (hostname, port, tls).

    Accepts ``mqtt://host:1883``, ``mqtts://host:8883`` or a bare hostname.
    An explicit *port* wins over the one in the URL.
    """
    if "://" not in url:
        url = f"mqtt://{url}"
    parts = urllib.parse.urlsplit(url)
    tls = parts.scheme in ("mqtts", "ssl", "tls")
    if port is None:
        port = parts.port or (8883 if tls else 1883)
    return parts.hostname or "localhost", port, tls


def encode_snapshot(snapshot) -> str:
    data = snapshot.to_dict() if hasattr(snapshot, "to_dict") else snapshot
    return json.dumps(data)


def is_timeout(error: aiomqtt.MqttError) -> bool:
    """True if aiomqtt wrapped a socket or CONNACK/PUBACK timeout.

    aiomqtt re-raises these as plain MqttError("timed out") or
    MqttError("Operation timed out"), usually without a cause.
    """
    if isinstance(error.__cause__, (TimeoutError, asyncio.TimeoutError)):
        return True
    return "timed out" in str(error).lower()


class _Publisher:
    """Shared broker settings for both strategies."""

    mode = ""

    def __init__(self, hostname: str, port: int = 1883, *, username: str | None = None,
                 password: str | None = None, tls: bool = False, qos: int = 0,
                 timeout: float = DEFAULT_TIMEOUT, topic: str = DEFAULT_TOPIC):
        self.hostname = hostname
        self.port = port
        self.username = username or None
        self.password = password or None
        self.tls = tls
        self.qos = qos
        self.timeout = timeout
        self.topic = topic
        self.published = 0
        self.failed = 0

    def _client(self, identifier: str | None = None, will=None) -> aiomqtt.Client:
        client = aiomqtt.Client(
            hostname=self.hostname,
            port=self.port,
            username=self.username,
            password=self.password,
            identifier=identifier,
            tls_context=ssl.create_default_context() if self.tls else None,
            will=will,
            timeout=self.timeout,
        )
        # paho's socket connect has its own 5s timeout; align it with ours
        paho = getattr(client, "_client", None)
        if paho is not None and hasattr(paho, "connect_timeout"):
            paho.connect_timeout = self.timeout
        return client

    def _failure(self, e: aiomqtt.MqttError, what: str):
        self.failed += 1
        if is_timeout(e):
            return PublishTimeout(f"{what} to {self.hostname}:{self.port} timed out: {e}")
        return BrokerRejected(f"MQTT publish failed: {e}")

    async def start(self):
        """Prepare the publisher (no-op unless overridden)."""

    async def stop(self):
        """Release the publisher (no-op unless overridden)."""

    @property
    def connected(self) -> bool | None:
        return None

    def status(self) -> dict:
        return {
            "mode": self.mode,
            "broker": f"{self.hostname}:{self.port}",
            "topic": self.topic,
            "qos": self.qos,
            "connected": self.connected,
            "published": self.published,
            "failed": self.failed,
        }


class EphemeralPublisher(_Publisher):
    """Opens a fresh broker connection for every message."""

    mode = "ephemeral"

    async def publish(self, topic: str, snapshot):
        payload = encode_snapshot(snapshot)
        try:
            await asyncio.wait_for(self._publish_once(topic, payload), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            self.failed += 1
            raise PublishTimeout(
                f"MQTT connect/publish to {self.hostname}:{self.port} timed out "
                f"after {self.timeout:g}s") from e
        except aiomqtt.MqttError as e:
            raise self._failure(e, "MQTT connect/publish") from e
        self.published += 1
        logger.debug("MQTT published to %s (%d bytes)", topic, len(payload))

    async def _publish_once(self, topic: str, payload: str):
        identifier = f"spotify-visualizer-{int(time.time() * 1000)}"
        async with self._client(identifier=identifier) as client:
            await client.publish(topic, payload, qos=self.qos)


class PersistentPublisher(_Publisher):
    """Keeps one connection open with auto-reconnect and exponential backoff."""

    mode = "persistent"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.status_topic = f"{self.topic}/status"
        self._mqtt_client = None
        self._mqtt_task: asyncio.Task | None = None
        self._running = False

    @property
    def connected(self) -> bool:
        return self._mqtt_client is not None

    async def start(self):
        self._running = True
        self._mqtt_task = asyncio.create_task(self._mqtt_loop())
        logger.info("MQTT transport starting -> %s:%d", self.hostname, self.port)

    async def stop(self):
        self._running = False
        if self._mqtt_task:
            self._mqtt_task.cancel()
            try:
                await self._mqtt_task
            except asyncio.CancelledError:
                pass
            self._mqtt_task = None
        self._mqtt_client = None
        logger.info("MQTT transport stopped")

    async def _mqtt_loop(self):
        """Connect to the broker with auto-reconnect and exponential backoff."""
        backoff = MIN_BACKOFF  # seconds

        while self._running:
            try:
                will = aiomqtt.Will(
                    topic=self.status_topic,
                    payload=json.dumps({"status": "offline"}),
                    qos=1,
                    retain=True,
                )
                async with self._client(will=will) as client:
                    self._mqtt_client = client
                    backoff = MIN_BACKOFF  # reset on successful connect

                    await client.publish(
                        self.status_topic,
                        json.dumps({"status": "online"}),
                        qos=1,
                        retain=True,
                    )
                    logger.info("MQTT connected to %s:%d", self.hostname, self.port)

                    # Nothing is subscribed; iterating blocks until the connection drops
                    async for _ in client.messages:
                        pass

            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._mqtt_client = None
                logger.warning("MQTT connection lost (%s), reconnecting in %gs", e, backoff)
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, MAX_BACKOFF)

        self._mqtt_client = None

    async def publish(self, topic: str, snapshot):
        client = self._mqtt_client
        if client is None:
            self.failed += 1
            raise NotConnected(f"MQTT not connected to {self.hostname}:{self.port}")

        payload = encode_snapshot(snapshot)
        try:
            await asyncio.wait_for(client.publish(topic, payload, qos=self.qos),
                                   timeout=self.timeout)
        except asyncio.TimeoutError as e:
            self.failed += 1
            raise PublishTimeout(f"No broker ack within {self.timeout:g}s") from e
        except aiomqtt.MqttError as e:
            raise self._failure(e, "MQTT publish") from e
        self.published += 1
        logger.debug("MQTT published to %s (%d bytes)", topic, len(payload))


def create_publisher():
    """Build the publisher described by the ``mqtt`` config section."""
    hostname, port, tls = parse_broker_url(
        cfg("mqtt", "broker_url", default="localhost"),
        cfg_int("mqtt", "port"),
    )
    mode = str(cfg("mqtt", "mode", default="persistent")).lower()
    cls = EphemeralPublisher if mode == "ephemeral" else PersistentPublisher
    return cls(
        hostname,
        port,
        username=cfg("mqtt", "username"),
        password=cfg("mqtt", "password"),
        tls=tls,
        qos=cfg_int("mqtt", "qos", default=0),
        timeout=cfg_float("mqtt", "timeout", default=DEFAULT_TIMEOUT),
        topic=cfg("mqtt", "topic", default=DEFAULT_TOPIC),
    )
