import asyncio, enum, logging
from dataclasses import dataclass
from pfsense_mqtt.rules_sync import AVAILABLE, ON

log = logging.getLogger("CommandHandler")


class BusEventType(enum.Enum):
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    ERROR = "error"
    MESSAGE = "message"


@dataclass
class BusEvent:
    type: BusEventType
    topic: str | None = None
    payload: bytes | str | None = None
    error: Exception | None = None


class CommandHandler:
    """Routes bus events to the rule synchronizer."""

    def __init__(self, sync):
        self.sync = sync
        self.config = sync.config
        self.tasks = set()

    def dispatch(self, event: BusEvent):
        """Handle an event in its own task so settle delays never block the message loop."""
        task = asyncio.create_task(self.handle(event))
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return task

    async def cancel_tasks(self):
        """Cancel in-flight event handlers and wait for them to unwind."""
        tasks = list(self.tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self.tasks.clear()

    async def handle(self, event: BusEvent):
        try:
            if event.type is BusEventType.CONNECTED:
                await self.on_connect()
            elif event.type is BusEventType.RECONNECTING:
                self.on_reconnect()
            elif event.type is BusEventType.ERROR:
                self.on_error(event.error)
            elif event.type is BusEventType.MESSAGE:
                await self.handle_message(event.topic, event.payload)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error(f"[CMD] Error handling {event.type.value} event: {e}")

    # ───────────────────────────────────────────────
    async def on_connect(self):
        if not self.sync.connected:
            self.sync.connected = True
            if self.config.hass_topic:
                await self.sync.bridge.subscribe(self.config.hass_topic)
            log.info(f"[CMD] MQTT connection established, resending config/state in {self.config.connect_delay} seconds")
        await self.sync.sleep(self.config.connect_delay)
        await self.sync.process_rules()

    def on_reconnect(self):
        if self.sync.connected:
            log.warning("[CMD] Connection to MQTT broker lost. Attempting to reconnect...")
        else:
            log.info("[CMD] Attempting to reconnect to MQTT broker...")
        self.sync.connected = False

    def on_error(self, error):
        log.error(f"[CMD] Unable to connect to MQTT broker: {error}")
        self.sync.connected = False

    # ───────────────────────────────────────────────
    async def handle_message(self, topic, payload):
        if isinstance(payload, (bytes, bytearray)):
            payload = payload.decode(errors="replace")
        message = (payload or "").strip()

        if topic == self.config.hass_topic:
            await self.handle_status(message)
        else:
            await self.handle_command(topic, message)

    async def handle_status(self, message):
        log.info(f"[CMD] Home Assistant status topic received '{message}'")
        if message != AVAILABLE:
            return
        delay = self.config.hass_restart_delay
        log.info(f"[CMD] Home Assistant restarted, resending config/state in {delay} seconds")
        # stop any running republish before starting a fresh one
        self.sync.cancel_republish()
        await self.sync.sleep(delay)
        await self.sync.process_rules()
        log.info("[CMD] Resent device config/state information")

    async def handle_command(self, topic, message):
        parts = topic.split("/")
        if len(parts) < 3:
            log.debug(f"[CMD] Ignoring message on unexpected topic {topic}")
            return
        rule_id = self.sync.registry.reverse_lookup(parts[2])
        if rule_id is None:
            log.debug(f"[CMD] Ignoring command for unknown rule id {parts[2]}")
            return
        try:
            await self.sync.update_rule(rule_id, message != ON)
        except Exception as e:
            log.error(f"[CMD] Command for rule '{rule_id}' dropped: {e}")
