"""MQTT broker link for the bridge.

Owns the aiomqtt client, runs the connect/receive/reconnect loop and feeds
connect and close signals into the broker link's state tracker. A transition
to CONNECTED or RECONNECTED republishes every device snapshot.
"""

from __future__ import annotations

import asyncio
import contextlib
import ssl
from typing import TYPE_CHECKING

import aiomqtt

from tuya_mqtt_bridge.const import PUBLISH_QOS
from tuya_mqtt_bridge.link_state import ConnectionStateTracker
from tuya_mqtt_bridge.logging_abstraction import get_logger
from tuya_mqtt_bridge.mqtt.command_routing import CommandRouter
from tuya_mqtt_bridge.mqtt.state_updates import StateUpdateHelper
from tuya_mqtt_bridge.structs import LinkState

if TYPE_CHECKING:
    from collections.abc import Iterable

    from tuya_mqtt_bridge.config import BridgeConfig, BrokerSettings
    from tuya_mqtt_bridge.devices.device_link import DeviceLink

logger = get_logger(__name__)

BROKER_LINK_NAME = "mqtt"


def build_tls_params(settings: BrokerSettings) -> aiomqtt.TLSParameters | None:
    """TLS parameters for ``mqtts`` connections, None for plain ``mqtt``."""
    if not settings.use_tls:
        return None
    tls = settings.tls
    return aiomqtt.TLSParameters(
        ca_certs=str(tls.ca_certs) if tls and tls.ca_certs else None,
        certfile=str(tls.certfile) if tls and tls.certfile else None,
        keyfile=str(tls.keyfile) if tls and tls.keyfile else None,
        cert_reqs=ssl.CERT_REQUIRED,
    )


class MQTTClient:
    """Broker link: connection lifecycle, publishing and the inbound receiver."""

    lp: str = "mqtt:"

    def __init__(self, config: BridgeConfig) -> None:
        self.config: BridgeConfig = config
        self.settings: BrokerSettings = config.broker
        self.topic: str = config.root_topic
        self.client: aiomqtt.Client | None = None
        self.links: dict[str, DeviceLink] = {}
        self.start_task: asyncio.Task[None] | None = None

        self.tracker: ConnectionStateTracker = ConnectionStateTracker(BROKER_LINK_NAME)
        self.tracker.add_observer(self._log_transition)

        self.state_updates: StateUpdateHelper = StateUpdateHelper(self)
        self.command_router: CommandRouter = CommandRouter(self)

    def attach_links(self, links: Iterable[DeviceLink]) -> None:
        """Register the device links the router publishes for and routes to."""
        self.links = {link.name: link for link in links}

    @property
    def is_connected(self) -> bool:
        return self.tracker.is_up

    @property
    def subscribe_filter(self) -> str:
        return f"{self.topic}/#"

    def _log_transition(self, state: LinkState) -> None:
        logger.info("MQTT client %s.", state.value)

    def _build_client(self) -> aiomqtt.Client:
        return aiomqtt.Client(
            hostname=self.settings.host,
            port=self.settings.port,
            username=self.settings.username,
            password=self.settings.password,
            identifier=self.settings.client_id,
            tls_params=build_tls_params(self.settings),
        )

    async def connect(self) -> bool:
        """Open a broker session. Returns False (after logging) on failure."""
        lp = f"{self.lp}connect:"
        logger.debug("%s Connecting to MQTT broker %s:%s...", lp, self.settings.host, self.settings.port)
        self.client = self._build_client()
        try:
            _ = await self.client.__aenter__()
        except aiomqtt.MqttError as mqtt_err_exc:
            # [code:134] Bad user name or password / [code:135] Not authorized
            if "code:134" in str(mqtt_err_exc) or "code:135" in str(mqtt_err_exc):
                logger.error(
                    "%s Broker rejected credentials, check APP_MQTT_USERNAME / APP_MQTT_PASSWORD (username: %s): %s",
                    lp,
                    self.settings.username,
                    mqtt_err_exc,
                )
            else:
                logger.error("%s Connection failed: %s", lp, mqtt_err_exc)
            return False
        except ssl.SSLError as ssl_exc:
            logger.error("%s TLS setup failed: %s", lp, ssl_exc)
            return False
        logger.debug("%s Connected to MQTT broker: %s port: %s", lp, self.settings.host, self.settings.port)
        return True

    async def _on_connected(self) -> None:
        """Feed the connect signal; on a real (re)connection re-assert every device state."""
        new_state = self.tracker.on_connect()
        if new_state is not None and new_state.is_up:
            _ = await self.state_updates.publish_all()

    async def subscribe(self) -> bool:
        lp = f"{self.lp}subscribe:"
        assert self.client is not None, "client must be initialized"
        try:
            await self.client.subscribe(self.subscribe_filter, qos=PUBLISH_QOS)
        except aiomqtt.MqttError as e:
            logger.error("%s Subscribing to %s failed: %s", lp, self.subscribe_filter, e)
            return False
        logger.debug("%s Subscribed to %s", lp, self.subscribe_filter)
        return True

    async def _close_session(self) -> None:
        if self.client is None:
            return
        try:
            await self.client.__aexit__(None, None, None)
        except aiomqtt.MqttError as e:
            logger.debug("%s session close: %s", self.lp, e)

    async def start(self) -> None:
        """Connect, serve and reconnect until cancelled."""
        lp = f"{self.lp}start:"
        try:
            while True:
                if await self.connect():
                    await self._on_connected()
                    try:
                        if await self.subscribe():
                            await self.command_router.start_receiver_task()
                    except aiomqtt.MqttError as msg_err:
                        logger.warning("%s MQTT error: %s", lp, msg_err)
                    finally:
                        await self._close_session()
                        _ = self.tracker.on_close()
                else:
                    _ = self.tracker.on_close()

                logger.info(
                    "%s broker unavailable, retrying in %s seconds...",
                    lp,
                    self.settings.conn_delay,
                )
                await asyncio.sleep(self.settings.conn_delay)
        except asyncio.CancelledError:
            logger.debug("%s MQTT start task cancelled", lp)
            raise

    async def stop(self) -> None:
        """Cancel the connection loop; its cleanup closes the broker session."""
        lp = f"{self.lp}stop:"
        if self.start_task is not None and not self.start_task.done():
            _ = self.start_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self.start_task
        else:
            await self._close_session()
        self.client = None
        logger.info("%s Disconnected from MQTT broker", lp)

    async def publish(self, topic: str, payload: bytes, qos: int = PUBLISH_QOS, retain: bool = False) -> bool:
        """Fire-and-forget publish. Errors are logged, never raised."""
        lp = f"{self.lp}publish:"
        if self.client is None:
            logger.debug("%s no broker session yet, dropping publish to %s", lp, topic)
            return False
        try:
            _ = await self.client.publish(topic, payload, qos=qos, retain=retain)
        except aiomqtt.MqttError as mqtt_err:
            if self.tracker.is_up:
                logger.warning("%s [MqttError] %s -> %s", lp, topic, mqtt_err)
            else:
                logger.debug("%s broker down, publish to %s dropped: %s", lp, topic, mqtt_err)
            return False
        return True
