"""
Data Models for the device identity, connect credentials and MQTT messages.

Identity and credentials are frozen so a derived credential can never be
half-filled or mutated after the fact. Secret-bearing fields are kept out
of `repr()` so they do not leak into logs or tracebacks.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    SUBSCRIBING = "subscribing"
    PUBLISHING = "publishing"


@dataclass(frozen=True)
class DeviceIdentity:
    """The product key / device name / device secret triple issued by the IoT platform."""
    product_key: str
    device_name: str
    device_secret: str = field(repr=False)


@dataclass(frozen=True)
class ConnectCredential:
    """The three values an MQTT CONNECT needs. Derived per attempt, never stored."""
    client_id: str
    username: str
    password: str = field(repr=False)


@dataclass(frozen=True)
class Topics:
    publish: str
    subscribe: str

    @classmethod
    def for_identity(cls, identity: DeviceIdentity,
                     publish_template: str = "/{product_key}/{device_name}/user/update",
                     subscribe_template: str = "/{product_key}/{device_name}/user/get") -> "Topics":
        names = {"product_key": identity.product_key, "device_name": identity.device_name}
        return cls(publish=publish_template.format(**names),
                   subscribe=subscribe_template.format(**names))


@dataclass(frozen=True)
class TextMessage:
    """A schema-less text payload bound for a topic."""
    topic: str
    payload: str
    qos: int = 0
    retain: bool = False

    def to_bytes(self) -> bytes:
        """Converts the payload to UTF-8 encoded bytes for MQTT."""
        return self.payload.encode("utf-8")

    def to_aiomqtt_args(self) -> dict:
        """Returns dict suitable for client.publish(**args)"""
        return {
            "topic": self.topic,
            "payload": self.to_bytes(),
            "qos": self.qos,
            "retain": self.retain,
        }


def greeting_payload(now: Optional[datetime] = None) -> str:
    """Text sent right after connecting, stamped to the millisecond."""
    now = now or datetime.now()
    return f"hello IoT {now.strftime('%Y-%m-%d %H:%M:%S')}.{now.microsecond // 1000:03d}"
