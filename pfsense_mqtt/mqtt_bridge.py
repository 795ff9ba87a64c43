import asyncio, logging, random
from aiomqtt import Client, MqttError
from pfsense_mqtt.command_handler import BusEvent, BusEventType

log = logging.getLogger("MQTTBridge")


class MQTTBridge:
    """
    MQTT connection for the bridge, built on aiomqtt >= 2.
    Keeps reconnecting and turns connection changes and inbound
    messages into BusEvents for the command handler.
    """

    def __init__(self, host, port=1883, username=None, password=None, client_id=None, reconnect_interval=5):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.client_id = client_id or f"pfsense-mqtt-{random.randint(1000, 9999)}"
        self.reconnect_interval = reconnect_interval
        self.client = None
        self.running = False
        self.on_event = None

    # ───────────────────────────────────────────────
    def _emit(self, event):
        if self.on_event is not None:
            self.on_event(event)

    async def run(self, on_event):
        """Connect, listen and reconnect until disconnect() is called."""
        self.on_event = on_event
        self.running = True
        while self.running:
            try:
                log.info(f"[Bridge] Connecting to MQTT broker {self.host}:{self.port} as {self.client_id}...")
                async with Client(
                    self.host,
                    self.port,
                    username=self.username,
                    password=self.password,
                    identifier=self.client_id,
                ) as client:
                    self.client = client
                    log.info("[Bridge] Connected to broker ✅")
                    self._emit(BusEvent(BusEventType.CONNECTED))
                    async for msg in client.messages:
                        self._emit(BusEvent(BusEventType.MESSAGE, topic=msg.topic.value, payload=msg.payload))
            except MqttError as e:
                if self.running:
                    log.error(f"[Bridge] Broker error: {e}")
                    self._emit(BusEvent(BusEventType.ERROR, error=e))
            finally:
                self.client = None
            if not self.running:
                break
            await asyncio.sleep(self.reconnect_interval)
            self._emit(BusEvent(BusEventType.RECONNECTING))

    # ───────────────────────────────────────────────
    async def publish(self, topic, payload, qos=0):
        if self.client is None:
            log.warning(f"[Bridge] Publish to {topic} attempted while disconnected.")
            return
        await self.client.publish(topic, payload, qos=qos)
        log.debug(f"[Bridge] Published → {topic}")

    async def subscribe(self, topic):
        if self.client is None:
            log.warning(f"[Bridge] Subscribe to {topic} attempted while disconnected.")
            return
        await self.client.subscribe(topic)
        log.debug(f"[Bridge] Subscribed to {topic}")

    def disconnect(self):
        """Stop reconnecting; the caller cancels the run() task to close the socket."""
        self.running = False
        log.info("[Bridge] Disconnecting from broker")
