import base64
import json

import pytest
import requests
import responses
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from meshcreds.webpush import (
    MAX_PAYLOAD_LENGTH,
    Subscription,
    WebpushEncryption,
    hkdf,
    new_request,
    raw_key_to_private_key,
    send_message,
    shared_secret,
)

AUTH = bytes(range(16))
ENDPOINT = "https://push.example.com/send/abc"


@pytest.fixture
def mocked():
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        yield rsps


class FakeTokens:
    def __init__(self, value="token"):
        self.value = value
        self.audiences = []

    def get_token(self, audience):
        self.audiences.append(audience)
        return self.value


def b64url(data):
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def make_keys():
    key = ec.generate_private_key(ec.SECP256R1())
    private = key.private_numbers().private_value.to_bytes(32, "big")
    public = key.public_key().public_bytes(
        serialization.Encoding.X962, serialization.PublicFormat.UncompressedPoint
    )
    return private, public


def test_round_trip():
    private, public = make_keys()
    cipher = WebpushEncryption.for_sender(public, AUTH).encrypt(b"hello push")
    receiver = WebpushEncryption.for_receiver(b64url(private), public, AUTH)
    assert receiver.decrypt(cipher) == b"hello push"


def test_layout():
    _, public = make_keys()
    enc = WebpushEncryption.for_sender(public, AUTH)
    message = b"abc"
    cipher = enc.encrypt(message)
    assert cipher[:16] == enc.salt
    assert cipher[16:21] == bytes([0, 0, 16, 0, 65])
    assert cipher[21:86] == enc.send_public
    assert len(cipher) == 86 + len(message) + 1 + 16
    assert enc.ciphertext == cipher


def test_fixed_parameters_are_deterministic():
    _, public = make_keys()
    send_private, send_public = make_keys()
    salt = bytes(16)
    first = WebpushEncryption(ua_public=public, auth=AUTH, salt=salt,
                              send_private=send_private, send_public=send_public)
    second = WebpushEncryption(ua_public=public, auth=AUTH, salt=salt,
                               send_private=send_private, send_public=send_public)
    assert first.encrypt(b"same") == second.encrypt(b"same")


def test_payload_limit():
    _, public = make_keys()
    assert len(WebpushEncryption.for_sender(public, AUTH).encrypt(b"x" * MAX_PAYLOAD_LENGTH)) > 0
    with pytest.raises(ValueError, match="too large"):
        WebpushEncryption.for_sender(public, AUTH).encrypt(b"x" * (MAX_PAYLOAD_LENGTH + 1))


def test_missing_key_or_auth():
    _, public = make_keys()
    with pytest.raises(ValueError, match="public key"):
        WebpushEncryption.for_sender(b"", AUTH).encrypt(b"m")
    with pytest.raises(ValueError, match="auth"):
        WebpushEncryption.for_sender(public, b"").encrypt(b"m")


def test_tampered_message_fails():
    private, public = make_keys()
    cipher = bytearray(WebpushEncryption.for_sender(public, AUTH).encrypt(b"secret message"))
    cipher[-1] ^= 1
    receiver = WebpushEncryption.for_receiver(b64url(private), public, AUTH)
    with pytest.raises(ValueError):
        receiver.decrypt(bytes(cipher))


def test_wrong_auth_fails():
    private, public = make_keys()
    cipher = WebpushEncryption.for_sender(public, AUTH).encrypt(b"data")
    receiver = WebpushEncryption.for_receiver(b64url(private), public, b"other-auth-value")
    with pytest.raises(ValueError):
        receiver.decrypt(cipher)


def test_hkdf_rfc5869_first_block():
    ikm = bytes([0x0B] * 22)
    salt = bytes(range(13))
    info = bytes(range(0xF0, 0xFA))
    expected = bytes.fromhex(
        "3cb25f25faacd57a90434f64d0362f2a2d2d0a90cf1a5a4c5db02d56ecc4c5bf"
    )
    assert hkdf(salt, ikm, info, 32) == expected
    assert hkdf(salt, ikm, info, 16) == expected[:16]


def test_hkdf_length_limit():
    with pytest.raises(ValueError):
        hkdf(b"s", b"i", b"x", 33)


def test_shared_secret_is_symmetric():
    priv_a, pub_a = make_keys()
    priv_b, pub_b = make_keys()
    assert shared_secret(pub_b, priv_a) == shared_secret(pub_a, priv_b)


def test_shared_secret_rejects_bad_point():
    priv, _ = make_keys()
    with pytest.raises(ValueError):
        shared_secret(b"\x04" + bytes(64), priv)


def test_raw_key_to_private_key():
    private, public = make_keys()
    key = raw_key_to_private_key(b64url(private), b64url(public))
    assert key.private_numbers().private_value == int.from_bytes(private, "big")
    _, other_public = make_keys()
    with pytest.raises(ValueError):
        raw_key_to_private_key(b64url(private), b64url(other_public))


def subscription_json(public, padded=False):
    key = base64.urlsafe_b64encode(public).decode()
    auth = base64.urlsafe_b64encode(AUTH).decode()
    if not padded:
        key, auth = key.rstrip("="), auth.rstrip("=")
    return json.dumps({"endpoint": ENDPOINT, "keys": {"p256dh": key, "auth": auth}})


def test_subscription_encrypt_with_padded_keys():
    private, public = make_keys()
    sub = Subscription.from_json(subscription_json(public, padded=True))
    assert sub.endpoint == ENDPOINT
    cipher = sub.encrypt(b"payload")
    assert sub.key == public
    assert sub.auth == AUTH
    receiver = WebpushEncryption.for_receiver(b64url(private), public, AUTH)
    assert receiver.decrypt(cipher) == b"payload"


def test_subscription_invalid_json():
    with pytest.raises(ValueError):
        Subscription.from_json("{not json")


def test_new_request_encrypts_payload():
    private, public = make_keys()
    req = new_request(ENDPOINT, public, AUTH, "hi", 60, FakeTokens())
    assert req.headers["ttl"] == "60"
    assert req.headers["authorization"] == "Bearer token"
    assert req.headers["content-encoding"] == "aesgcm"
    assert req.headers["encryption"].startswith("salt=")
    assert req.headers["crypto-key"].startswith("dh=")
    receiver = WebpushEncryption.for_receiver(b64url(private), public, AUTH)
    assert receiver.decrypt(req.body) == b"hi"


def test_new_request_without_message():
    tokens = FakeTokens("vapid t=token")
    req = new_request(ENDPOINT, b"", b"", "", 0, tokens)
    assert req.body is None
    assert req.headers["authorization"] == "vapid t=token"
    assert "encryption" not in req.headers
    assert tokens.audiences == [ENDPOINT]


def test_send_message_show(capsys):
    _, public = make_keys()
    cmd = send_message(None, subscription_json(public), True, "hello", FakeTokens())
    assert cmd.endswith(" " + ENDPOINT)
    assert 'authorization:token"' in cmd
    assert cmd in capsys.readouterr().out


def test_send_message_posts(mocked):
    private, public = make_keys()
    mocked.add(responses.POST, ENDPOINT, status=201)
    res = send_message(requests.Session(), subscription_json(public), False, "hello",
                       FakeTokens())
    assert res.status_code == 201
    sent = mocked.calls[0].request
    assert sent.headers["ttl"] == "0"
    assert sent.headers["authorization"] == "token"
    assert sent.headers["Content-Encoding"] == "aes128gcm"
    receiver = WebpushEncryption.for_receiver(b64url(private), public, AUTH)
    assert receiver.decrypt(sent.body) == b"hello"


def test_send_message_reports_failure(mocked, capsys):
    _, public = make_keys()
    mocked.add(responses.POST, ENDPOINT, status=400, body="rejected")
    res = send_message(None, subscription_json(public), False, "hello", FakeTokens())
    assert res.status_code == 400
    out = capsys.readouterr().out
    assert "rejected" in out
    assert "Failed to send" in out