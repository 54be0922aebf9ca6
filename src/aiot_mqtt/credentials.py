"""
Device Credential Derivation.

Turns a `DeviceIdentity` and a millisecond timestamp into the client id,
username and password the IoT platform's MQTT broker expects. The scheme
is fixed by the broker's authentication contract, so every literal and
the field order of the MAC source must stay exactly as written here:

    client_id  = "{pk}.{dn}|timestamp={ts},_v={version},securemode=2,signmethod=hmacsha256|"
    username   = "{dn}&{pk}"
    password   = hex(HMAC-SHA256(secret, "clientId{pk}.{dn}deviceName{dn}productKey{pk}timestamp{ts}"))

The timestamp is embedded in both the client id and the signature, so a
credential must be derived again for every connection attempt.
"""
import hashlib
import hmac
import logging
import time

from aiot_mqtt.errors import InvalidIdentityError, SigningFailureError
from aiot_mqtt.models import ConnectCredential, DeviceIdentity

logger = logging.getLogger(__name__)

DEFAULT_CLIENT_VERSION = "paho-android-1.0.0"
SECURE_MODE = "2"
SIGN_METHOD = "hmacsha256"


def _validate(identity: DeviceIdentity, now_millis: int):
    for name in ("product_key", "device_name", "device_secret"):
        value = getattr(identity, name, None)
        if not isinstance(value, str) or not value:
            raise InvalidIdentityError(f"{name} must be a non-empty string")
    # bool is an int subclass but never a timestamp
    if not isinstance(now_millis, int) or isinstance(now_millis, bool) or now_millis < 0:
        raise InvalidIdentityError(f"timestamp must be a non-negative integer of milliseconds, got {now_millis!r}")


def mac_source(product_key: str, device_name: str, timestamp: str) -> str:
    return ("clientId" + product_key + "." + device_name
            + "deviceName" + device_name
            + "productKey" + product_key
            + "timestamp" + timestamp)


def sign(device_secret: str, content: str) -> str:
    """
    HMAC-SHA256 of `content` keyed with `device_secret`, as 64 lowercase hex chars.

    `hexdigest()` encodes every byte, so leading zero bytes are kept.
    """
    try:
        digest = hmac.new(device_secret.encode("utf-8"), content.encode("utf-8"), hashlib.sha256).hexdigest()
    except (TypeError, ValueError) as e:
        raise SigningFailureError(f"HMAC-SHA256 signing failed: {type(e).__name__}") from None
    return digest.zfill(64)


def derive(identity: DeviceIdentity, now_millis: int,
           client_version: str = DEFAULT_CLIENT_VERSION) -> ConnectCredential:
    """
    Derives the MQTT connect credential for `identity` at `now_millis`.

    Raises `InvalidIdentityError` when any identity field is empty and
    `SigningFailureError` when the MAC cannot be computed. Nothing is
    returned on failure.
    """
    _validate(identity, now_millis)
    timestamp = str(now_millis)

    client_id = (f"{identity.product_key}.{identity.device_name}"
                 f"|timestamp={timestamp},_v={client_version},"
                 f"securemode={SECURE_MODE},signmethod={SIGN_METHOD}|")
    username = f"{identity.device_name}&{identity.product_key}"
    password = sign(identity.device_secret,
                    mac_source(identity.product_key, identity.device_name, timestamp))

    logger.debug(f"Derived connect credential for {client_id}")
    return ConnectCredential(client_id=client_id, username=username, password=password)


def current_millis() -> int:
    return int(time.time() * 1000)


def derive_now(identity: DeviceIdentity, client_version: str = DEFAULT_CLIENT_VERSION) -> ConnectCredential:
    """Derives a credential stamped with the current wall-clock time."""
    return derive(identity, current_millis(), client_version=client_version)
