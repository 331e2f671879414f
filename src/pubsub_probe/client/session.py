"""
MQTT Session: the transport capability consumed by the Probe Loop.

This module is responsible for:
- Declaring the `Session` interface the loop depends on
  (subscribe, publish, read-with-timeout, close) and the `Connector` that
  produces one from an authentication key.
- Implementing it on top of `aiomqtt` (MQTT v5).
- Translating aiomqtt failures into the probe's error taxonomy, so the loop
  never has to know which library sits underneath.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional, Protocol

import paho.mqtt.client as mqtt
from aiomqtt import Client as MQTTClient, MqttCodeError, MqttError, ProtocolVersion

from pubsub_probe.errors import AuthFailure, ConnectionLost, PublishError, ReadTimeout, SubscriptionError
from pubsub_probe.probe.models import ReceivedMessage

logger = logging.getLogger(__name__)

DEFAULT_READ_TIMEOUT = 30.0


class Session(Protocol):
    async def subscribe(self, topic: str) -> None:
        ...

    async def publish(self, topic: str, payload: bytes) -> None:
        ...

    async def read(self) -> ReceivedMessage:
        ...

    async def close(self) -> None:
        ...


Connector = Callable[[str], Awaitable[Session]]

# Codes paho reports when the request never reached the broker because the
# connection is already gone
DISCONNECTED_CODES = (mqtt.MQTT_ERR_NO_CONN, mqtt.MQTT_ERR_CONN_LOST)


def _is_disconnect(error: MqttCodeError) -> bool:
    # aiomqtt chains the stored disconnect reason when the client is offline
    return error.rc in DISCONNECTED_CODES or error.__cause__ is not None


def _payload_bytes(payload) -> bytes:
    # aiomqtt hands back whatever paho decoded; normalise to raw bytes
    if payload is None:
        return b""
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload)
    return str(payload).encode('utf-8')


class MQTTSession:
    client: MQTTClient
    client_id: str
    read_timeout: float
    _closed: bool

    """
    A connected, authenticated aiomqtt client. Create it with `MQTTSession.connect`.
    """
    def __init__(self, client: MQTTClient, client_id: str, read_timeout: float = DEFAULT_READ_TIMEOUT):
        self.client = client
        self.client_id = client_id
        self.read_timeout = read_timeout
        self._closed = False

    @classmethod
    async def connect(cls,
                      authentication_key: str,
                      *,
                      host: str = 'localhost',
                      port: int = 1883,
                      client_id: str = 'longrunningclient',
                      username: Optional[str] = None,
                      keepalive: int = 60,
                      read_timeout: float = DEFAULT_READ_TIMEOUT) -> "MQTTSession":
        """
        Opens the connection and authenticates with `authentication_key` as the
        MQTT password. The key is never logged.
        """
        if not authentication_key:
            raise AuthFailure("Authentication key must not be empty", retryable=False)

        logger.info(f"Connecting to {host}:{port} as {client_id}...")
        client = MQTTClient(host,
                            port,
                            protocol=ProtocolVersion.V5,
                            identifier=client_id,
                            username=username or client_id,
                            password=authentication_key,
                            keepalive=keepalive)
        try:
            # The session outlives any single `async with` block, so we enter
            # the client's context manually and leave it in close().
            await client.__aenter__()
        except MqttCodeError as e:
            # The broker answered, but refused us (bad credentials, not authorized, ...)
            raise AuthFailure(f"Broker rejected connection: {e}", details={"rc": str(e.rc)}) from e
        except MqttError as e:
            raise ConnectionLost(f"Could not reach broker at {host}:{port}: {e}") from e

        logger.info(f"Connected to broker as {client_id}")
        return cls(client, client_id, read_timeout=read_timeout)

    async def subscribe(self, topic: str) -> None:
        try:
            await self.client.subscribe(topic)
        except MqttCodeError as e:
            if _is_disconnect(e):
                raise ConnectionLost(f"Connection lost while subscribing: {e}") from e
            raise SubscriptionError(topic, f"Subscription to '{topic}' failed: {e}") from e
        except MqttError as e:
            raise ConnectionLost(f"Connection lost while subscribing: {e}") from e
        logger.info(f"Subscribed to '{topic}'")

    async def publish(self, topic: str, payload: bytes) -> None:
        try:
            await self.client.publish(topic, payload=payload, qos=0)
        except MqttCodeError as e:
            if _is_disconnect(e):
                raise ConnectionLost(f"Connection lost while publishing: {e}") from e
            raise PublishError(topic, f"Publish to '{topic}' failed: {e}") from e
        except MqttError as e:
            raise ConnectionLost(f"Connection lost while publishing: {e}") from e
        logger.debug(f"Published {payload!r} to '{topic}'")

    async def read(self) -> ReceivedMessage:
        """
        Waits for the next message on any subscribed topic.

        Raises ReadTimeout after `read_timeout` seconds and ConnectionLost when
        the client disconnects while waiting.
        """
        try:
            message = await asyncio.wait_for(anext(self.client.messages), timeout=self.read_timeout)
        except asyncio.TimeoutError as e:
            raise ReadTimeout(self.read_timeout) from e
        except MqttError as e:
            raise ConnectionLost(f"Connection lost while reading: {e}") from e
        except StopAsyncIteration as e:
            raise ConnectionLost("Message stream ended") from e

        return ReceivedMessage(topic=str(message.topic), body=_payload_bytes(message.payload))

    async def close(self) -> None:
        """Best-effort disconnect; a session that is already dead is simply dropped."""
        if self._closed:
            return
        self._closed = True
        try:
            await self.client.__aexit__(None, None, None)
            logger.info(f"Disconnected {self.client_id}")
        except MqttError as e:
            logger.warning(f"Error while disconnecting {self.client_id}: {e}")
