import asyncio, json, logging

log = logging.getLogger("RulesSync")

ON = "ON"
OFF = "OFF"
AVAILABLE = "online"
NOT_AVAILABLE = "offline"


def rule_state(rule):
    return OFF if "disabled" in rule else ON


class RulesSync:
    """
    Keeps pfSense rules and their Home Assistant switches in step.

    Holds the bus connection flag and the republish counter. Every operation
    fetches the rules fresh from the firewall; nothing is cached between calls.
    """

    def __init__(self, config, registry, firewall, bridge, sleep=asyncio.sleep):
        self.config = config
        self.registry = registry
        self.firewall = firewall
        self.bridge = bridge
        self.sleep = sleep
        self.connected = False
        self.republish_count = max(1, config.republish_count)
        self.republish_generation = 0
        self.refresh_task = None

    # ───────────────────────────────────────────────
    def rule_topic(self, rule_id):
        return f"{self.config.pfsense_prefix}/rules/{self.registry.get_or_create(rule_id)}"

    def topics(self, rule_id):
        base = self.rule_topic(rule_id)
        return {
            "availability": f"{base}/availability",
            "state": f"{base}/state",
            "command": f"{base}/command",
        }

    def config_topic(self, rule_id):
        return f"{self.config.hass_discovery_prefix}/switch/{self.registry.get_or_create(rule_id)}/config"

    def managed_rules(self):
        return list(self.config.pfsense_rules)

    # ───────────────────────────────────────────────
    async def get_rules(self):
        """Fetch the live rule list from pfSense."""
        config = await self.firewall.get_configuration()
        rules = config.get("filter", {}).get("rule", [])
        if isinstance(rules, dict):
            rules = [rules]
        return rules

    async def filter_rules(self, rule_ids, rules=None):
        """Pick rules by description in the given order; missing ones come back as None."""
        if rules is None:
            rules = await self.get_rules()
        by_id = {r.get("descr"): r for r in rules}
        return [by_id.get(rule_id) for rule_id in rule_ids]

    async def update_rule(self, rule_id, disabled):
        """
        Enable or disable a rule and push the whole rule list back.
        FauxAPI patches whole sections, so edits made elsewhere between the
        read and the patch are overwritten.
        """
        if rule_id is None:
            return
        rules = await self.get_rules()
        [rule] = await self.filter_rules([rule_id], rules)
        if rule is None:
            log.debug(f"[RulesSync] Rule '{rule_id}' not found, ignoring update")
            return
        if disabled:
            rule["disabled"] = ""
        else:
            rule.pop("disabled", None)
        await self.firewall.patch_configuration({"filter": {"rule": rules}})
        log.info(f"[RulesSync] Rule '{rule_id}' {'disabled' if disabled else 'enabled'}")
        await self.publish_rule_state(rule_id, OFF if disabled else ON)

    # ───────────────────────────────────────────────
    def discovery_message(self, rule_id):
        topics = self.topics(rule_id)
        return {
            "name": rule_id,
            "unique_id": self.registry.get_or_create(rule_id),
            "availability_topic": topics["availability"],
            "payload_available": AVAILABLE,
            "payload_not_available": NOT_AVAILABLE,
            "state_topic": topics["state"],
            "payload_on": ON,
            "payload_off": OFF,
            "command_topic": topics["command"],
        }

    async def register_rule(self, rule_id):
        """Announce the rule as a switch and listen on its command topic."""
        message = self.discovery_message(rule_id)
        await self.bridge.subscribe(message["command_topic"])
        await self.bridge.publish(self.config_topic(rule_id), json.dumps(message), qos=1)

    async def publish_rule_state(self, rule_id, state):
        await self.bridge.publish(self.topics(rule_id)["state"], state)

    async def publish_availability(self, rule_id, available=True):
        payload = AVAILABLE if available else NOT_AVAILABLE
        await self.bridge.publish(self.topics(rule_id)["availability"], payload, qos=1)

    async def refresh_rules(self, rules=None):
        """Publish current state only; called on a timer."""
        if not self.connected:
            return
        if rules is None:
            rules = await self.filter_rules(self.managed_rules())
        for rule in rules:
            if rule is None:
                continue
            await self.publish_rule_state(rule["descr"], rule_state(rule))

    async def process_rules(self):
        """
        Full announce: discovery, state, then availability, repeated while the
        republish counter is positive. Starting a new cycle supersedes a running
        one; the old loop stops at its next check.
        """
        if self.republish_count < 1:
            self.republish_count = max(1, self.config.republish_count)
        self.republish_generation += 1
        generation = self.republish_generation

        while self.republish_count > 0 and self.connected and generation == self.republish_generation:
            try:
                rules = [r for r in await self.filter_rules(self.managed_rules()) if r is not None]
                for rule in rules:
                    await self.register_rule(rule["descr"])
                for rule in rules:
                    await self.publish_rule_state(rule["descr"], rule_state(rule))
                await self.sleep(self.config.availability_delay)
                for rule in rules:
                    await self.publish_availability(rule["descr"], True)
                log.info(f"[RulesSync] Announced {len(rules)} rules")
            except Exception as e:
                log.error(f"[RulesSync] Republish failed: {e}")
            await self.sleep(self.config.republish_delay)
            if generation != self.republish_generation:
                break
            self.republish_count -= 1

    def cancel_republish(self):
        self.republish_count = 0

    def stop_republish(self):
        """Zero the counter and retire the running cycle for good."""
        self.republish_count = 0
        self.republish_generation += 1

    async def publish_unavailable(self):
        """Mark every managed rule offline; used on clean shutdown."""
        rules = await self.filter_rules(self.managed_rules())
        for rule in rules:
            if rule is None:
                continue
            await self.publish_availability(rule["descr"], False)

    # ───────────────────────────────────────────────
    async def _refresh_loop(self):
        while True:
            await self.sleep(self.config.refresh_interval)
            try:
                await self.refresh_rules()
            except Exception as e:
                log.error(f"[RulesSync] Refresh failed: {e}")

    def start_refresh(self):
        if self.refresh_task is None or self.refresh_task.done():
            self.refresh_task = asyncio.create_task(self._refresh_loop())
        return self.refresh_task

    def stop_refresh(self):
        if self.refresh_task is not None:
            self.refresh_task.cancel()
            self.refresh_task = None
