import json, logging, os
from dataclasses import dataclass, field
from dotenv import load_dotenv
import yaml

log = logging.getLogger("Config")

CONFIG_FILES = ("config.yaml", "config.yml", "config.json")


class ConfigError(Exception):
    """Raised when the bridge configuration is missing or malformed."""


@dataclass(frozen=True)
class BridgeConfig:
    host: str
    pfsense_host: str
    port: int = 1883
    mqtt_user: str | None = None
    mqtt_pass: str | None = None
    pfsense_apikey: str | None = None
    pfsense_apisecret: str | None = None
    pfsense_verify_tls: bool = False
    pfsense_prefix: str = "pfsense"
    pfsense_rules: tuple = field(default_factory=tuple)
    hass_discovery_prefix: str = "homeassistant"
    hass_topic: str = "hass/status"
    uuids_file: str = "uuids.json"

    # timings (seconds)
    republish_count: int = 1
    republish_delay: float = 30
    refresh_interval: float = 10
    connect_delay: float = 5
    restart_delay: float | None = None
    availability_delay: float = 1
    shutdown_delay: float = 1
    reconnect_interval: float = 5

    api_enabled: bool = False
    api_port: int = 8000
    log_level: str = "INFO"

    @property
    def hass_restart_delay(self):
        if self.restart_delay is None:
            return self.republish_delay + 5
        return self.restart_delay


# file key → environment variable
ENV_KEYS = {
    "host": "MQTTHOST",
    "port": "MQTTPORT",
    "mqtt_user": "MQTTUSER",
    "mqtt_pass": "MQTTPASSWORD",
    "pfsense_prefix": "MQTTPFSENSETOPIC",
    "pfsense_rules": "PFSENSERULES",
    "pfsense_host": "PFSENSEHOST",
    "pfsense_apikey": "PFSENSEAPIKEY",
    "pfsense_apisecret": "PFSENSEAPISECRET",
    "pfsense_verify_tls": "PFSENSEVERIFYTLS",
    "hass_discovery_prefix": "HASSDISCOVERYPREFIX",
    "hass_topic": "HASSTOPIC",
    "uuids_file": "UUIDSFILE",
    "republish_count": "REPUBLISHCOUNT",
    "republish_delay": "REPUBLISHDELAY",
    "refresh_interval": "REFRESHINTERVAL",
    "reconnect_interval": "MQTTRECONNECT",
    "api_enabled": "API_ENABLED",
    "api_port": "API_PORT",
    "log_level": "LOG_LEVEL",
}

INT_KEYS = {"port", "republish_count", "api_port"}
FLOAT_KEYS = {
    "republish_delay", "refresh_interval", "connect_delay", "restart_delay",
    "availability_delay", "shutdown_delay", "reconnect_interval",
}
BOOL_KEYS = {"pfsense_verify_tls", "api_enabled"}


def find_config_file(cwd=None):
    """Return the config file to use, or None when configuration comes from the environment."""
    explicit = os.getenv("CONFIG_FILE")
    if explicit:
        return explicit
    cwd = cwd or os.getcwd()
    for name in CONFIG_FILES:
        path = os.path.join(cwd, name)
        if os.path.exists(path):
            return path
    return None


def _from_file(path):
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Unable to read config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    log.info(f"[Config] Loaded configuration from {path}")
    return data


def _from_env():
    raw = {}
    for key, env in ENV_KEYS.items():
        value = os.getenv(env)
        if value is None or value == "":
            continue
        if key == "pfsense_rules":
            try:
                value = json.loads(value)
            except json.JSONDecodeError as e:
                raise ConfigError(f"{env} is not valid JSON: {e}") from e
        raw[key] = value
    return raw


def _coerce(key, value):
    try:
        if key in INT_KEYS:
            return int(value)
        if key in FLOAT_KEYS:
            return float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {key}: {value!r}") from e
    if key in BOOL_KEYS:
        if isinstance(value, bool):
            return value
        return str(value).lower() in ("1", "true", "yes", "on")
    return value


def build_config(raw: dict) -> BridgeConfig:
    """Validate a raw mapping and apply defaults."""
    known = set(BridgeConfig.__dataclass_fields__)
    values = {}
    for key, value in raw.items():
        if key not in known:
            log.warning(f"[Config] Ignoring unknown option '{key}'")
            continue
        if value is None:
            continue
        values[key] = _coerce(key, value)

    for required in ("host", "pfsense_host"):
        if not values.get(required):
            raise ConfigError(f"Missing required option '{required}'")

    if values.get("republish_count", 1) < 1:
        raise ConfigError("republish_count must be at least 1")

    level = str(values.get("log_level", "INFO")).upper()
    if not isinstance(logging.getLevelName(level), int):
        raise ConfigError(f"Invalid log level {values['log_level']!r}")
    values["log_level"] = level

    rules = values.get("pfsense_rules", [])
    if not isinstance(rules, (list, tuple)) or not all(isinstance(r, str) for r in rules):
        raise ConfigError("pfsense_rules must be a list of rule descriptions")
    values["pfsense_rules"] = tuple(rules)

    # empty strings fall back to defaults
    for key in ("pfsense_prefix", "hass_discovery_prefix", "hass_topic"):
        if key in values and not values[key]:
            del values[key]

    return BridgeConfig(**values)


def load_config(path=None) -> BridgeConfig:
    """
    Load the bridge configuration.
    A config file (YAML or JSON) wins; otherwise the environment (and .env) is used.
    """
    load_dotenv()
    path = path or find_config_file()
    raw = _from_file(path) if path else _from_env()
    config = build_config(raw)
    log.info(f"[Config] Managing {len(config.pfsense_rules)} rules on {config.pfsense_host}")
    return config
