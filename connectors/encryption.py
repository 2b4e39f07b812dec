"""
Credential encryption — encrypt / decrypt connection secrets at rest.

Uses AES-256-GCM (``AESGCM`` from the ``cryptography`` library).  Every
value is stored as a self-describing JSON envelope::

    {"version": 1, "algorithm": "aes-256-gcm", "iv": "...", "ciphertext": "...", "authTag": "..."}

The key is loaded from ``config.encryption_key`` (env var: ``ENCRYPTION_KEY``).
It may be a base64-encoded 32-byte key, a literal 32-byte string, or any
passphrase (hashed down to 32 bytes with SHA-256).  Generate one with::

    python -c "import base64, os; print(base64.b64encode(os.urandom(32)).decode())"

If no key is configured, encryption is **refused**; values stored before
envelope encryption existed can still be decoded so they can be migrated.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
import os
import re
from typing import Any, Dict, Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from config.settings import config
from connectors.errors import DecryptionError, EncryptionKeyMissingError

logger = logging.getLogger(__name__)

ALGORITHM = "aes-256-gcm"
VERSION = 1
IV_LENGTH = 12
KEY_LENGTH = 32
TAG_LENGTH = 16

_BASE64_RE = re.compile(r"^[A-Za-z0-9+/]+={0,2}$")

Envelope = Dict[str, Any]


def looks_like_base64(value: str) -> bool:
    return bool(value) and len(value) % 4 == 0 and bool(_BASE64_RE.match(value))


def derive_key(key_material: str) -> bytes:
    """Raw 32-byte key (base64 or literal) if given, else SHA-256 of the passphrase."""
    material = key_material.strip()
    if looks_like_base64(material):
        decoded = base64.b64decode(material)
        if len(decoded) == KEY_LENGTH:
            return decoded
    raw = material.encode("utf-8")
    if len(raw) == KEY_LENGTH:
        return raw
    return hashlib.sha256(raw).digest()


def normalize_envelope(payload: Any) -> Optional[Envelope]:
    """
    Return a canonical envelope dict, or None if *payload* is not one.

    Accepts ``content``/``data`` for the ciphertext and ``tag`` for the
    auth tag, as written by earlier producers.
    """
    if not isinstance(payload, dict):
        return None
    iv = payload.get("iv")
    ciphertext = next(
        (payload[k] for k in ("ciphertext", "content", "data") if isinstance(payload.get(k), str)),
        None,
    )
    if not isinstance(iv, str) or ciphertext is None:
        return None
    auth_tag = payload.get("authTag", payload.get("tag"))
    version = payload.get("version")
    return {
        "version": version if isinstance(version, int) else VERSION,
        "algorithm": payload.get("algorithm") if isinstance(payload.get("algorithm"), str) else ALGORITHM,
        "iv": iv,
        "ciphertext": ciphertext,
        "authTag": auth_tag if isinstance(auth_tag, str) else None,
    }


def parse_envelope(value: Union[str, Dict[str, Any], None]) -> Optional[Envelope]:
    if isinstance(value, dict):
        return normalize_envelope(value)
    if not isinstance(value, str) or not value:
        return None
    try:
        return normalize_envelope(json.loads(value))
    except ValueError:
        return None


def is_encrypted(value: Union[str, Dict[str, Any], None]) -> bool:
    return parse_envelope(value) is not None


class CredentialCipher:
    """Authenticated encryption of credential structures with one cached key."""

    def __init__(self, key_material: Optional[str]) -> None:
        material = (key_material or "").strip()
        self._aesgcm: Optional[AESGCM] = AESGCM(derive_key(material)) if material else None

    @property
    def is_configured(self) -> bool:
        return self._aesgcm is not None

    def require_key(self, component: str = "gateway") -> AESGCM:
        if self._aesgcm is None:
            raise EncryptionKeyMissingError(
                f"{component}: ENCRYPTION_KEY is not configured; refusing to store credentials"
            )
        return self._aesgcm

    # ── Encryption ─────────────────────────────────────────────────────

    def encrypt(self, plain: Any) -> Envelope:
        """Encrypt any JSON-serialisable value.  A fresh IV is drawn on every call."""
        aesgcm = self.require_key()
        iv = os.urandom(IV_LENGTH)
        sealed = aesgcm.encrypt(iv, json.dumps(plain).encode("utf-8"), None)
        return {
            "version": VERSION,
            "algorithm": ALGORITHM,
            "iv": base64.b64encode(iv).decode(),
            "ciphertext": base64.b64encode(sealed[:-TAG_LENGTH]).decode(),
            "authTag": base64.b64encode(sealed[-TAG_LENGTH:]).decode(),
        }

    def encrypt_to_string(self, plain: Any) -> str:
        return json.dumps(self.encrypt(plain))

    def encrypt_optional(self, plain: Optional[Any]) -> Optional[str]:
        return None if plain is None else self.encrypt_to_string(plain)

    # ── Decryption ─────────────────────────────────────────────────────

    def decrypt(self, envelope: Union[Envelope, str]) -> Any:
        """Decrypt an envelope.  Raises ``DecryptionError``; never returns partial data."""
        payload = parse_envelope(envelope)
        if payload is None:
            raise DecryptionError("Value is not a recognised encrypted envelope")
        if payload["algorithm"].lower() != ALGORITHM:
            raise DecryptionError(f"Unsupported algorithm '{payload['algorithm']}'")
        if not payload["authTag"]:
            raise DecryptionError("Envelope is missing its authentication tag")
        if self._aesgcm is None:
            raise DecryptionError("Cannot decrypt: ENCRYPTION_KEY is not configured")

        try:
            iv = base64.b64decode(payload["iv"], validate=True)
            ciphertext = base64.b64decode(payload["ciphertext"], validate=True)
            tag = base64.b64decode(payload["authTag"], validate=True)
        except (binascii.Error, ValueError) as exc:
            raise DecryptionError("Envelope fields are not valid base64") from exc
        if len(iv) != IV_LENGTH or len(tag) != TAG_LENGTH:
            raise DecryptionError("Envelope IV or tag has the wrong length")

        try:
            plaintext = self._aesgcm.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as exc:
            raise DecryptionError("Failed to decrypt value: authentication tag mismatch") from exc
        try:
            return json.loads(plaintext.decode("utf-8"))
        except ValueError as exc:
            raise DecryptionError("Decrypted payload is not valid JSON") from exc

    def decrypt_from_string(self, value: Optional[str], *, legacy_base64: bool = False) -> Any:
        """
        Decrypt a stored value.

        Envelopes are decrypted.  Anything else is a legacy value: base64
        text is decoded when *legacy_base64* is set, otherwise the value is
        returned verbatim.
        """
        if not value:
            return ""
        if is_encrypted(value):
            return self.decrypt(value)
        if legacy_base64 and looks_like_base64(value):
            try:
                return base64.b64decode(value).decode("utf-8")
            except (binascii.Error, UnicodeDecodeError) as exc:
                raise DecryptionError("Failed to decode legacy encoded value") from exc
        return value

    def decrypt_optional(self, value: Optional[str], *, legacy_base64: bool = False) -> Optional[Any]:
        if value is None:
            return None
        return self.decrypt_from_string(value, legacy_base64=legacy_base64)


_LEGACY_FIELD_NAMES = {
    "apiKey": "api_key",
    "headerName": "header_name",
    "paramName": "param_name",
    "clientId": "client_id",
    "clientSecret": "client_secret",
    "accessToken": "access_token",
    "refreshToken": "refresh_token",
    "tokenUrl": "token_url",
    "expiresAt": "expires_at",
}


def decode_legacy_auth(stored: Any) -> Dict[str, Any]:
    """
    Decode an authentication record written before envelope encryption.

    Legacy rows are either a plain dict, or a dict whose ``credentials``
    field is base64-encoded JSON.  Credentials are flattened into the
    auth-config shape (``{"type": ..., <fields>}``).
    """
    if isinstance(stored, str):
        try:
            stored = json.loads(stored)
        except ValueError as exc:
            raise DecryptionError("Legacy authentication value is not JSON") from exc
    if not isinstance(stored, dict):
        raise DecryptionError("Legacy authentication value has an unknown shape")

    record = dict(stored)
    credentials = record.pop("credentials", None)
    if isinstance(credentials, str):
        try:
            credentials = json.loads(base64.b64decode(credentials).decode("utf-8"))
        except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
            raise DecryptionError("Failed to decode legacy authentication credentials") from exc
    if isinstance(credentials, dict):
        record.update(credentials)
    record.setdefault("type", "none")
    return {_LEGACY_FIELD_NAMES.get(k, k): v for k, v in record.items()}


# ── Process-wide cipher ─────────────────────────────────────────────────

_cipher: Optional[CredentialCipher] = None


def get_cipher() -> CredentialCipher:
    """Lazy-initialise the cipher once from settings."""
    global _cipher
    if _cipher is None:
        _cipher = CredentialCipher(config.encryption_key)
        if _cipher.is_configured:
            logger.info("Credential encryption enabled (%s)", ALGORITHM)
        else:
            logger.warning(
                "ENCRYPTION_KEY not set — new connections and providers will be refused; "
                "legacy values can still be read for migration."
            )
    return _cipher


def reset_cipher() -> None:
    global _cipher
    _cipher = None
