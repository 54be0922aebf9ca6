"""
Configuration Loader.

Responsible for reading the config.yaml file, layering environment
variable overrides on top of it, and turning the result into the
identity, topics and broker address the rest of the package uses.
"""
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from aiot_mqtt.errors import ConfigError
from aiot_mqtt.models import DeviceIdentity, Topics

logger = logging.getLogger(__name__)

DEFAULT_REGION = "cn-shanghai"
DEFAULT_PORT = 443
HOST_TEMPLATE = "{product_key}.iot-as-mqtt.{region}.aliyuncs.com"

# environment variable -> (section, key)
ENV_OVERRIDES = {
    "AIOT_PRODUCT_KEY": ("device", "product_key"),
    "AIOT_DEVICE_NAME": ("device", "device_name"),
    "AIOT_DEVICE_SECRET": ("device", "device_secret"),
    "AIOT_MQTT_HOST": ("mqtt", "host"),
    "AIOT_MQTT_PORT": ("mqtt", "port"),
}


def load_config(config_path: str = "config.yaml") -> Dict[str, Any]:
    """
    Loads the YAML configuration file.
    """
    path = Path(config_path)
    if not path.exists():
        logger.warning(f"Config file not found at {path}. Using defaults.")
        return {}

    try:
        with open(path, 'r') as f:
            config = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        logger.error(f"Failed to parse config file: {e}")
        raise

    if not isinstance(config, dict):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level")
    logger.info(f"Loaded configuration from {path}")
    return config


def _section(config: Mapping[str, Any], name: str) -> Dict[str, Any]:
    section = config.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"Config section '{name}' must be a mapping")
    return section


def apply_env_overrides(config: Dict[str, Any], environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """
    Returns a copy of `config` with values from the environment taking precedence.
    """
    environ = os.environ if environ is None else environ
    merged = {key: (dict(value) if isinstance(value, dict) else value) for key, value in config.items()}
    for variable, (section, key) in ENV_OVERRIDES.items():
        if variable in environ:
            if not merged.get(section):
                merged[section] = {}
            _section(merged, section)[key] = environ[variable]
            logger.debug(f"Config value {section}.{key} taken from ${variable}")
    return merged


def identity_from_config(config: Mapping[str, Any]) -> DeviceIdentity:
    """
    Builds the DeviceIdentity. Missing values become empty strings and
    are left for the credential deriver to reject. Values YAML parsed as
    anything but a string (e.g. an unquoted `0012`) are refused, since
    converting them back would not give the issued text.
    """
    device = _section(config, "device")
    fields = {}
    for name in ("product_key", "device_name", "device_secret"):
        value = device.get(name)
        if value is None:
            value = ""
        if not isinstance(value, str):
            raise ConfigError(f"device.{name} must be a string; quote it in the config file")
        fields[name] = value
    return DeviceIdentity(**fields)


def topics_from_config(config: Mapping[str, Any], identity: DeviceIdentity) -> Topics:
    topics = _section(config, "topics")
    templates = {}
    if topics.get("publish"):
        templates["publish_template"] = topics["publish"]
    if topics.get("subscribe"):
        templates["subscribe_template"] = topics["subscribe"]
    try:
        return Topics.for_identity(identity, **templates)
    except KeyError as e:
        raise ConfigError(f"Unknown placeholder {e} in topic template") from None


def broker_host(config: Mapping[str, Any], identity: DeviceIdentity) -> str:
    mqtt_conf = _section(config, "mqtt")
    if mqtt_conf.get("host"):
        return str(mqtt_conf["host"])
    return HOST_TEMPLATE.format(product_key=identity.product_key,
                                region=mqtt_conf.get("region", DEFAULT_REGION))


def broker_port(config: Mapping[str, Any]) -> int:
    mqtt_conf = _section(config, "mqtt")
    try:
        return int(mqtt_conf.get("port", DEFAULT_PORT))  # Must be int
    except (TypeError, ValueError):
        raise ConfigError(f"mqtt.port must be an integer, got {mqtt_conf.get('port')!r}") from None
