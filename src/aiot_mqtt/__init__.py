"""
aiot_mqtt

A demo device client for a cloud IoT platform: derives the vendor's
HMAC-signed MQTT connect credentials from a device identity and exchanges
text messages with the device's uplink and downlink topics.
"""
from aiot_mqtt.credentials import derive, derive_now
from aiot_mqtt.errors import AiotError, ConfigError, CredentialError, ErrorKind, InvalidIdentityError, SigningFailureError
from aiot_mqtt.models import ConnectCredential, ConnectionState, DeviceIdentity, TextMessage, Topics

__version__ = "0.1.0"
