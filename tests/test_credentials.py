"""
Tests for the credential derivation scheme. The golden passwords were
computed independently with `openssl dgst -sha256 -hmac`.
"""
import dataclasses
import re
from unittest.mock import patch

import pytest

from aiot_mqtt.credentials import derive, derive_now, mac_source, sign
from aiot_mqtt.errors import CredentialError, ErrorKind, InvalidIdentityError, SigningFailureError
from aiot_mqtt.models import ConnectCredential, DeviceIdentity

NOW = 1700000000000
GOLDEN_PASSWORD = "70dbf6953241559ce48cf04e7e61127d6696df1e5d9f991398d220f4527a0f7f"

# This timestamp produces a MAC whose first byte is 0x00
LEADING_ZERO_NOW = 1700000000407
LEADING_ZERO_PASSWORD = "0076e0e9600db3e86dc39c7230256837827ce460d7832ed13dc0a27af5daf704"

HEX64 = re.compile(r"^[0-9a-f]{64}$")


def test_golden_vector(demo_identity):
    credential = derive(demo_identity, NOW)

    assert credential.username == "paho_android&a11xsrWmW14"
    assert credential.client_id == (
        "a11xsrWmW14.paho_android|timestamp=1700000000000,"
        "_v=paho-android-1.0.0,securemode=2,signmethod=hmacsha256|"
    )
    assert credential.password == GOLDEN_PASSWORD


def test_mac_source_field_order():
    assert mac_source("pk", "dn", "0") == "clientIdpk.dndeviceNamednproductKeypktimestamp0"


def test_sign_matches_openssl():
    assert sign("s", "clientIdpk.dndeviceNamednproductKeypktimestamp0") == \
        "d4f476278376f3eeedb25356a0048fbe57e1e250fc3dc403b2108de373dbbba1"


def test_password_keeps_leading_zero_bytes(demo_identity):
    credential = derive(demo_identity, LEADING_ZERO_NOW)

    assert credential.password == LEADING_ZERO_PASSWORD
    assert len(credential.password) == 64


def test_derive_is_deterministic(demo_identity):
    assert derive(demo_identity, NOW) == derive(demo_identity, NOW)


@pytest.mark.parametrize("now", [0, 1, 999, NOW, 253402300799999])
def test_password_is_64_lowercase_hex(demo_identity, now):
    assert HEX64.match(derive(demo_identity, now).password)


@pytest.mark.parametrize("now", [0, 1234567, NOW])
def test_client_id_embeds_plain_decimal_timestamp(demo_identity, now):
    credential = derive(demo_identity, now)

    assert f"|timestamp={now}," in credential.client_id
    assert "timestamp" not in credential.username


def test_changing_secret_changes_only_password(demo_identity):
    secret = demo_identity.device_secret
    tampered = dataclasses.replace(demo_identity, device_secret="u" + secret[1:])

    original = derive(demo_identity, NOW)
    changed = derive(tampered, NOW)

    assert changed.password != original.password
    assert changed.client_id == original.client_id
    assert changed.username == original.username


def test_timestamp_changes_client_id_and_password(demo_identity):
    first = derive(demo_identity, NOW)
    second = derive(demo_identity, NOW + 1)

    assert first.client_id != second.client_id
    assert first.password != second.password
    assert first.username == second.username


def test_client_version_tag_is_configurable(demo_identity):
    credential = derive(demo_identity, NOW, client_version="py-demo-0.1.0")

    assert ",_v=py-demo-0.1.0,securemode=2,signmethod=hmacsha256|" in credential.client_id
    # The version tag is not part of the signed content
    assert credential.password == GOLDEN_PASSWORD


@pytest.mark.parametrize("field", ["product_key", "device_name", "device_secret"])
def test_empty_identity_field_is_rejected(demo_identity, field):
    identity = dataclasses.replace(demo_identity, **{field: ""})

    with pytest.raises(InvalidIdentityError) as excinfo:
        derive(identity, NOW)

    assert excinfo.value.kind is ErrorKind.INVALID_IDENTITY
    assert field in str(excinfo.value)


def test_none_identity_field_is_rejected(demo_identity):
    identity = dataclasses.replace(demo_identity, device_name=None)

    with pytest.raises(InvalidIdentityError):
        derive(identity, NOW)


@pytest.mark.parametrize("now", [-1, 1.5, "1700000000000", True])
def test_bad_timestamp_is_rejected(demo_identity, now):
    with pytest.raises(InvalidIdentityError):
        derive(demo_identity, now)


def test_signing_failure_is_typed_and_hides_secret(demo_identity):
    with patch("aiot_mqtt.credentials.hmac.new", side_effect=ValueError(demo_identity.device_secret)):
        with pytest.raises(SigningFailureError) as excinfo:
            derive(demo_identity, NOW)

    assert isinstance(excinfo.value, CredentialError)
    assert excinfo.value.kind is ErrorKind.SIGNING_FAILURE
    assert demo_identity.device_secret not in str(excinfo.value)
    assert excinfo.value.__cause__ is None


def test_secrets_are_kept_out_of_repr(demo_identity):
    credential = derive(demo_identity, NOW)

    assert demo_identity.device_secret not in repr(demo_identity)
    assert credential.password not in repr(credential)
    assert isinstance(credential, ConnectCredential)


def test_derive_now_uses_wall_clock(demo_identity):
    with patch("aiot_mqtt.credentials.time.time", return_value=NOW / 1000):
        credential = derive_now(demo_identity)

    assert credential == derive(demo_identity, NOW)
