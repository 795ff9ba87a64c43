import copy

import pytest

from pfsense_mqtt.config import BridgeConfig
from pfsense_mqtt.faux_api import FauxApiError
from pfsense_mqtt.identity import IdentityRegistry
from pfsense_mqtt.rules_sync import RulesSync


class FakeFirewall:
    """In-memory stand-in for the FauxAPI client."""

    def __init__(self, rules):
        self.config = {"filter": {"rule": rules}, "system": {"hostname": "pfsense"}}
        self.get_calls = 0
        self.patches = []
        self.fail = False

    async def get_configuration(self):
        self.get_calls += 1
        if self.fail:
            raise FauxApiError("config_get failed: unreachable")
        return copy.deepcopy(self.config)

    async def patch_configuration(self, patch):
        if self.fail:
            raise FauxApiError("config_patch failed: unreachable")
        self.patches.append(copy.deepcopy(patch))
        self.config["filter"]["rule"] = copy.deepcopy(patch["filter"]["rule"])

    async def close(self):
        pass


class FakeBridge:
    """Records publishes and subscriptions instead of talking to a broker."""

    def __init__(self):
        self.published = []
        self.subscribed = []
        self.running = True

    async def publish(self, topic, payload, qos=0):
        self.published.append((topic, payload, qos))

    async def subscribe(self, topic):
        self.subscribed.append(topic)

    def disconnect(self):
        self.running = False

    def payloads(self, topic):
        return [p for t, p, _ in self.published if t == topic]

    def topics_ending(self, suffix):
        return [t for t, _, _ in self.published if t.endswith(suffix)]


async def no_sleep(seconds):
    pass


def make_config(**overrides):
    values = dict(
        host="broker.local",
        pfsense_host="pfsense.local",
        pfsense_rules=("Block-Guest-WAN", "Block-Kids-Internet"),
        republish_delay=0,
        connect_delay=0,
        availability_delay=0,
        restart_delay=0,
        shutdown_delay=0,
    )
    values.update(overrides)
    return BridgeConfig(**values)


def sample_rules():
    return [
        {"descr": "Allow-LAN", "type": "pass", "interface": "lan"},
        {"descr": "Block-Guest-WAN", "type": "block", "interface": "opt1"},
        {"descr": "Block-Kids-Internet", "type": "block", "interface": "lan", "disabled": ""},
    ]


@pytest.fixture
def registry(tmp_path):
    return IdentityRegistry(str(tmp_path / "uuids.json")).load()


@pytest.fixture
def firewall():
    return FakeFirewall(sample_rules())


@pytest.fixture
def bridge():
    return FakeBridge()


@pytest.fixture
def sync(registry, firewall, bridge):
    s = RulesSync(make_config(), registry, firewall, bridge, sleep=no_sleep)
    s.connected = True
    return s
