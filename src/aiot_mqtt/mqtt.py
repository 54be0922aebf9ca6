"""
MQTT Connection Management for a single IoT device.

This module is responsible for:
- Deriving a fresh connect credential for every connection attempt.
- Connecting to the IoT platform broker through `aiomqtt`.
- Subscribing to the device's downlink topic.
- Draining the outbound queue onto the device's uplink topic.
- Handing received messages to a callback.
- Tracking the connection state and reconnecting after failures.
"""
import asyncio
import logging
import ssl
from typing import Callable, Optional

from aiomqtt import Client as MQTTClient, MqttError, ProtocolVersion

from aiot_mqtt.config_loader import broker_host, broker_port, identity_from_config, topics_from_config
from aiot_mqtt.credentials import DEFAULT_CLIENT_VERSION, current_millis, derive
from aiot_mqtt.errors import InvalidIdentityError, SigningFailureError
from aiot_mqtt.models import ConnectionState, TextMessage

logger = logging.getLogger(__name__)

MessageCallback = Callable[[str, str], None]


class MQTTManager:
    """
    Owns the connection to the broker and its lifecycle:
    Disconnected -> Connecting -> Connected <-> Subscribing / Publishing.
    """
    outbound_queue: asyncio.Queue
    config: dict
    host: str
    port: int
    keepalive: int
    qos: int
    use_tls: bool
    client_version: str
    reconnect_interval: float
    state: ConnectionState
    _main_task: Optional[asyncio.Task]
    _unsent: Optional[TextMessage]

    def __init__(self, config: dict, outbound_queue: asyncio.Queue,
                 on_message: Optional[MessageCallback] = None,
                 clock: Callable[[], int] = current_millis):
        self.config = config
        self.outbound_queue = outbound_queue
        self.on_message = on_message
        self._clock = clock

        self.identity = identity_from_config(config)
        self.topics = topics_from_config(config, self.identity)

        mqtt_conf = config.get('mqtt') or {}
        self.host = broker_host(config, self.identity)
        self.port = broker_port(config)
        self.keepalive = int(mqtt_conf.get('keepalive', 60))
        self.qos = int(mqtt_conf.get('qos', 0))
        self.use_tls = bool(mqtt_conf.get('tls', False))
        self.client_version = mqtt_conf.get('client_version', DEFAULT_CLIENT_VERSION)
        self.reconnect_interval = float(mqtt_conf.get('reconnect_interval', 5))

        self.state = ConnectionState.DISCONNECTED
        self._main_task = None
        # Dequeued but not confirmed sent; goes out first on the next connection
        self._unsent = None

    def _set_state(self, state: ConnectionState):
        if state != self.state:
            logger.debug(f"Connection state {self.state.value} -> {state.value}")
            self.state = state

    async def start(self):
        """
        Launches the connection loop in the background.
        """
        logger.info(f"Starting MQTT Manager, connecting to {self.host}:{self.port}...")
        self._main_task = asyncio.create_task(self._main_loop())

    async def stop(self):
        """
        Cancels the connection loop, which closes the connection.
        """
        if self._main_task:
            logger.info("Stopping MQTT Manager...")
            self._main_task.cancel()
            try:
                await self._main_task
            except asyncio.CancelledError:
                logger.info("MQTT Manager stopped gracefully.")
            except Exception as e:
                logger.error(f"Error during MQTT stop: {e}")
            self._main_task = None
        self._set_state(ConnectionState.DISCONNECTED)

    async def wait_closed(self):
        """Waits for the connection loop to end, re-raising a fatal error."""
        if self._main_task:
            await self._main_task

    async def _main_loop(self):
        """
        The persistent connection loop. Every pass derives a new credential,
        since the broker may reject a stale timestamp.
        """
        while True:
            self._set_state(ConnectionState.CONNECTING)
            try:
                credential = derive(self.identity, self._clock(), client_version=self.client_version)
                async with MQTTClient(self.host,
                                      self.port,
                                      protocol=ProtocolVersion.V311,
                                      identifier=credential.client_id,
                                      username=credential.username,
                                      password=credential.password,
                                      keepalive=self.keepalive,
                                      tls_context=ssl.create_default_context() if self.use_tls else None) as client:
                    self._set_state(ConnectionState.CONNECTED)
                    logger.info(f"Connected to {self.host} as {credential.username}")
                    await self._subscribe(client)
                    await self._serve(client)

            except asyncio.CancelledError:
                raise  # Let the stop() method handle this
            except InvalidIdentityError as e:
                self._set_state(ConnectionState.DISCONNECTED)
                logger.error(f"Device identity rejected, giving up: {e}")
                raise
            except SigningFailureError as e:
                self._set_state(ConnectionState.DISCONNECTED)
                logger.error(f"Could not sign connect credential: {e}. Retrying in {self.reconnect_interval}s...")
                await asyncio.sleep(self.reconnect_interval)
            except MqttError as e:
                self._set_state(ConnectionState.DISCONNECTED)
                logger.error(f"MQTT Connection lost: {e}. Retrying in {self.reconnect_interval}s...")
                await asyncio.sleep(self.reconnect_interval)
            except Exception as e:
                self._set_state(ConnectionState.DISCONNECTED)
                logger.exception(f"Unexpected error in MQTT connection: {e}. Retrying in {self.reconnect_interval}s...")
                await asyncio.sleep(self.reconnect_interval)

    async def _subscribe(self, client: MQTTClient):
        self._set_state(ConnectionState.SUBSCRIBING)
        await client.subscribe(self.topics.subscribe, qos=self.qos)
        logger.info(f"Subscribed to '{self.topics.subscribe}'")
        self._set_state(ConnectionState.CONNECTED)

    async def _serve(self, client: MQTTClient):
        """Runs the publisher and receiver side by side until either one fails."""
        tasks = [asyncio.create_task(self._publisher_loop(client)),
                 asyncio.create_task(self._receiver_loop(client))]
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        for task in done:
            task.result()
        raise MqttError("Message stream ended")

    async def _publisher_loop(self, client: MQTTClient):
        """The background worker that pushes queued messages to the broker."""
        while True:
            if self._unsent is not None:
                message, self._unsent = self._unsent, None
            else:
                message = await self.outbound_queue.get()
                self.outbound_queue.task_done()
            try:
                self._set_state(ConnectionState.PUBLISHING)
                await client.publish(**message.to_aiomqtt_args())
                logger.info(f"Published to '{message.topic}': {message.payload}")
            except (MqttError, asyncio.CancelledError):
                # Keep the message ahead of anything queued after it
                self._unsent = message
                raise
            finally:
                if self.state == ConnectionState.PUBLISHING:
                    self._set_state(ConnectionState.CONNECTED)

    async def _receiver_loop(self, client: MQTTClient):
        async for message in client.messages:
            payload = message.payload
            text = payload.decode('utf-8', errors='replace') if isinstance(payload, (bytes, bytearray)) else str(payload)
            topic = str(message.topic)
            logger.info(f"topic: {topic}, msg: {text}")
            if self.on_message:
                try:
                    self.on_message(topic, text)
                except Exception:
                    logger.exception(f"Message callback failed for topic '{topic}'")

    def publish_message(self, payload: str):
        """
        Queues `payload` for the uplink topic. Safe to call before the
        connection is up; the message goes out once it is.
        """
        logger.debug(f"Request to publish: {payload}")
        self.outbound_queue.put_nowait(TextMessage(topic=self.topics.publish, payload=payload, qos=self.qos))
