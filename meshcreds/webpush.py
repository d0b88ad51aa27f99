"""Web Push message encryption (aes128gcm) and request helpers."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import sys
from dataclasses import dataclass, field
from typing import Any, Protocol

import requests
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

MAX_PAYLOAD_LENGTH = 4078

_CURVE = ec.SECP256R1()
_RECORD_HEADER = bytes([0, 0, 16, 0, 65])
_SALT_LEN = 16
_KEY_LEN = 65
_HEADER_LEN = _SALT_LEN + len(_RECORD_HEADER) + _KEY_LEN
_TAG_LEN = 16


class _TokenProvider(Protocol):
    def get_token(self, audience: str) -> str: ...


def _b64url_decode(value: str) -> bytes:
    value = value.rstrip("=")
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def _b64url_encode(value: bytes) -> str:
    return base64.urlsafe_b64encode(value).rstrip(b"=").decode("ascii")


def _random_key() -> tuple[bytes, bytes]:
    key = ec.generate_private_key(_CURVE)
    private = key.private_numbers().private_value.to_bytes(32, "big")
    public = key.public_key().public_bytes(
        serialization.Encoding.X962, serialization.PublicFormat.UncompressedPoint
    )
    return private, public


def hkdf(salt: bytes, ikm: bytes, info: bytes, length: int) -> bytes:
    """Single-block HKDF-SHA256; at most 32 bytes of output."""
    if length > 32:
        raise ValueError("Can only produce HKDF outputs up to 32 bytes long")
    prk = hmac.new(salt, ikm, hashlib.sha256).digest()
    return hmac.new(prk, info + b"\x01", hashlib.sha256).digest()[:length]


def shared_secret(pub: bytes, priv: bytes) -> bytes:
    """ECDH on P-256: the X coordinate of priv * pub, without leading zeros."""
    try:
        peer = ec.EllipticCurvePublicKey.from_encoded_point(_CURVE, bytes(pub))
    except ValueError as exc:
        raise ValueError("invalid public key") from exc
    key = ec.derive_private_key(int.from_bytes(priv, "big"), _CURVE)
    return key.exchange(ec.ECDH(), peer).lstrip(b"\x00")


def raw_key_to_private_key(key: str, pub: str) -> ec.EllipticCurvePrivateKey:
    """Build a P-256 private key from base64url raw private and public keys."""
    private = ec.derive_private_key(int.from_bytes(_b64url_decode(key), "big"), _CURVE)
    public = private.public_key().public_bytes(
        serialization.Encoding.X962, serialization.PublicFormat.UncompressedPoint
    )
    if pub and _b64url_decode(pub) != public:
        raise ValueError("public key does not match the private key")
    return private


def _derive(auth: bytes, secret: bytes, ua_public: bytes, send_public: bytes,
            salt: bytes) -> tuple[bytes, bytes]:
    key_info = b"WebPush: info\x00" + ua_public + send_public
    ikm = hkdf(auth, secret, key_info, 32)
    cek = hkdf(salt, ikm, b"Content-Encoding: aes128gcm\x00", 16)
    nonce = hkdf(salt, ikm, b"Content-Encoding: nonce\x00", 12)
    return cek, nonce


@dataclass
class WebpushEncryption:
    """Encryption state for one Web Push message, for sender or receiver."""

    ciphertext: bytes | None = None
    salt: bytes | None = None
    ua_public: bytes = b""
    send_private: bytes | None = None
    send_public: bytes | None = None
    ua_private: bytes = b""
    auth: bytes = b""
    _ecdh_secret: bytes | None = field(default=None, init=False, repr=False)

    @classmethod
    def for_sender(cls, ua_public: bytes, auth: bytes) -> WebpushEncryption:
        """Context for encrypting to a subscription's public key and auth."""
        return cls(ua_public=ua_public, auth=auth)

    @classmethod
    def for_receiver(cls, ua_private: str, ua_public: bytes, auth: bytes) -> WebpushEncryption:
        """Context for decrypting; ua_private is base64url encoded."""
        return cls(ua_private=_b64url_decode(ua_private), ua_public=ua_public, auth=auth)

    def encrypt(self, plaintext: bytes) -> bytes:
        """Encrypt plaintext; returns salt, record header, sender key and ciphertext."""
        if self.salt is None:
            self.salt = os.urandom(_SALT_LEN)
        if self.send_public is None:
            self.send_private, self.send_public = _random_key()
        if len(plaintext) > MAX_PAYLOAD_LENGTH:
            raise ValueError(
                f"payload is too large. The max number of bytes is {MAX_PAYLOAD_LENGTH}, "
                f"input is {len(plaintext)} bytes"
            )
        if not self.ua_public:
            raise ValueError("subscription must include the client's public key")
        if not self.auth:
            raise ValueError("subscription must include the client's auth value")

        secret = shared_secret(self.ua_public, self.send_private or b"")
        self._ecdh_secret = secret
        cek, nonce = _derive(self.auth, secret, self.ua_public, self.send_public, self.salt)
        sealed = AESGCM(cek).encrypt(nonce, bytes(plaintext) + b"\x02", None)
        self.ciphertext = self.salt + _RECORD_HEADER + self.send_public + sealed
        return self.ciphertext

    def decrypt(self, ciphertext: bytes) -> bytes:
        """Decrypt a message produced by encrypt, using the receiver's private key."""
        if len(ciphertext) < _HEADER_LEN + _TAG_LEN + 1:
            raise ValueError("ciphertext is too short")
        self.ciphertext = ciphertext
        salt = ciphertext[:_SALT_LEN]
        send_public = ciphertext[_SALT_LEN + len(_RECORD_HEADER):_HEADER_LEN]
        secret = shared_secret(send_public, self.ua_private)
        self._ecdh_secret = secret
        cek, nonce = _derive(self.auth, secret, self.ua_public, send_public, salt)
        try:
            plain = AESGCM(cek).decrypt(nonce, ciphertext[_HEADER_LEN:], None)
        except InvalidTag as exc:
            raise ValueError("message authentication failed") from exc
        return plain[:-1]


def _lookup(mapping: dict[str, Any], name: str) -> Any:
    for key, value in mapping.items():
        if key.lower() == name.lower():
            return value
    return None


@dataclass
class Subscription:
    """A push subscription: endpoint plus the receiver's public key and auth."""

    endpoint: str = ""
    keys_p256dh: str = ""
    keys_auth: str = ""
    key: bytes | None = None
    auth: bytes | None = None
    location: str = ""

    @classmethod
    def from_json(cls, data: bytes | str) -> Subscription:
        """Parse a browser PushSubscription JSON document."""
        doc = json.loads(data)
        if not isinstance(doc, dict):
            raise ValueError("subscription must be a JSON object")
        keys = _lookup(doc, "keys") or {}
        return cls(
            endpoint=_lookup(doc, "endpoint") or "",
            keys_p256dh=_lookup(keys, "p256dh") or "",
            keys_auth=_lookup(keys, "auth") or "",
        )

    def _decode_keys(self) -> None:
        if self.key is None:
            try:
                self.key = _b64url_decode(self.keys_p256dh)
                self.auth = _b64url_decode(self.keys_auth)
            except (ValueError, TypeError) as exc:
                raise ValueError("invalid subscription keys") from exc

    def encrypt(self, data: bytes) -> bytes:
        """Encrypt data for this subscription."""
        self._decode_keys()
        return WebpushEncryption.for_sender(self.key or b"", self.auth or b"").encrypt(data)


def _header_field(name: str, value: bytes) -> str:
    return f"{name}={_b64url_encode(value)}"


def new_request(dest: str, key: bytes, auth: bytes, message: str, ttl: int,
                token_provider: _TokenProvider | None) -> requests.PreparedRequest:
    """Build a Web Push POST request, encrypting message when it is not empty."""
    headers = {"ttl": str(ttl)}
    if token_provider is not None:
        token = token_provider.get_token(dest)
        if " " not in token:
            token = "Bearer " + token
        headers["authorization"] = token
    body = None
    if message:
        enc = WebpushEncryption.for_sender(key, auth)
        body = enc.encrypt(message.encode())
        headers["encryption"] = _header_field("salt", enc.salt or b"")
        headers["crypto-key"] = _header_field("dh", enc.send_public or b"")
        headers["content-encoding"] = "aesgcm"
    return requests.Request("POST", dest, headers=headers, data=body).prepare()


def send_message(session: requests.Session | None, subscription: str, show: bool,
                 message: str, token_provider: _TokenProvider) -> Any:
    """Encrypt and send message to a subscription given as JSON.

    With show set, print and return an equivalent shell command instead of
    sending. Otherwise return the response, or None if sending failed.
    """
    if not message:
        message = sys.stdin.read()

    dest_url = ""
    dest_key = b""
    auth = b""
    if subscription:
        sub = Subscription.from_json(subscription)
        sub._decode_keys()
        dest_url = sub.endpoint
        dest_key = sub.key or b""
        auth = sub.auth or b"\x01"

    payload = WebpushEncryption.for_sender(dest_key, auth).encrypt(message.encode())
    authorization = token_provider.get_token(dest_url)

    if show:
        payload64 = base64.b64encode(payload).decode("ascii")
        cmd = ("echo -n " + payload64 + " | base64 -d > /tmp/$$.bin; "
               "curl -XPOST --data-binary @/tmp/$$.bin"
               " -proxy 127.0.0.1:5224"
               " -Httl:0"
               ' -H"authorization:' + authorization + '"')
        cmd = cmd + " " + dest_url
        print(cmd)
        return cmd

    headers = {"ttl": "0", "authorization": authorization, "Content-Encoding": "aes128gcm"}
    poster = session if session is not None else requests
    try:
        res = poster.post(dest_url, data=payload, headers=headers)
    except requests.RequestException as exc:
        print("Failed to send ", exc)
        return None
    if res.status_code != 201:
        print(f"HTTP {res.status_code} {res.reason}")
        print(res.text)
        print("Failed to send ", res.status_code)
    return res