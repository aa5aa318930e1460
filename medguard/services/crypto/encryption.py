from __future__ import annotations

from dataclasses import asdict, dataclass
import hashlib
import hmac
import json
import logging
import secrets
from typing import Any, Mapping, Sequence

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from medguard.core.config import get_settings
from medguard.core.errors import EncryptionConfigError
from medguard.services.crypto.utils import b64decode_str, b64encode_bytes, stable_json


logger = logging.getLogger(__name__)

ALGORITHM = "aes-256-gcm"
MIN_MASTER_KEY_LENGTH = 32
_KEY_BYTES = 32
_IV_BYTES = 12
_TAG_BYTES = 16
_ENCRYPTED_FIELDS_KEY = "_encrypted"


@dataclass(frozen=True)
class EncryptedData:
    # Serialized AES-GCM output; every field is text so it stores cleanly in JSON columns.
    ciphertext: str
    iv: str
    auth_tag: str
    algorithm: str
    key_version: str

    def to_dict(self) -> dict[str, str]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "EncryptedData":
        return cls(
            ciphertext=str(payload["ciphertext"]),
            iv=str(payload["iv"]),
            auth_tag=str(payload["auth_tag"]),
            algorithm=str(payload.get("algorithm") or ALGORITHM),
            key_version=str(payload["key_version"]),
        )


@dataclass(frozen=True)
class DataKey:
    plaintext: bytes
    encrypted: str


def _derive_key(master_key: str, *, salt: bytes, info: bytes) -> bytes:
    # Separate sub-keys per purpose so a leaked signature key cannot decrypt data.
    return HKDF(algorithm=hashes.SHA256(), length=_KEY_BYTES, salt=salt, info=info).derive(
        master_key.encode("utf-8")
    )


def _context_aad(context: Mapping[str, Any] | None) -> bytes | None:
    if not context:
        return None
    return stable_json(dict(context))


class EncryptionService:
    def __init__(
        self,
        master_key: str | None = None,
        *,
        salt: str | None = None,
        hash_salt: str | None = None,
        key_version: str | None = None,
    ) -> None:
        settings = get_settings()
        resolved_key = master_key if master_key is not None else settings.encryption_master_key
        if not resolved_key:
            raise EncryptionConfigError("ENCRYPTION_MASTER_KEY is required")
        if len(resolved_key) < MIN_MASTER_KEY_LENGTH:
            raise EncryptionConfigError(
                f"ENCRYPTION_MASTER_KEY must be at least {MIN_MASTER_KEY_LENGTH} characters"
            )
        salt_bytes = (salt or settings.encryption_salt).encode("utf-8")
        self._key_version = key_version or settings.encryption_key_version
        self._keys: dict[str, bytes] = {
            self._key_version: _derive_key(resolved_key, salt=salt_bytes, info=b"medguard:encryption"),
        }
        self._integrity_key = _derive_key(resolved_key, salt=salt_bytes, info=b"medguard:integrity")
        self._hash_key = _derive_key(resolved_key, salt=salt_bytes, info=b"medguard:identifier-hash")
        self._hash_salt = hash_salt or settings.hash_salt

    @property
    def key_version(self) -> str:
        return self._key_version

    def _key_for_version(self, key_version: str) -> bytes:
        key = self._keys.get(key_version)
        if key is None:
            raise ValueError(f"Unsupported key version: {key_version}")
        return key

    def encrypt(self, plaintext: str | bytes, context: Mapping[str, Any] | None = None) -> EncryptedData:
        raw = plaintext.encode("utf-8") if isinstance(plaintext, str) else plaintext
        iv = secrets.token_bytes(_IV_BYTES)
        sealed = AESGCM(self._key_for_version(self._key_version)).encrypt(iv, raw, _context_aad(context))
        return EncryptedData(
            ciphertext=b64encode_bytes(sealed[:-_TAG_BYTES]),
            iv=b64encode_bytes(iv),
            auth_tag=b64encode_bytes(sealed[-_TAG_BYTES:]),
            algorithm=ALGORITHM,
            key_version=self._key_version,
        )

    def decrypt_bytes(self, data: EncryptedData, context: Mapping[str, Any] | None = None) -> bytes:
        key = self._key_for_version(data.key_version)
        sealed = b64decode_str(data.ciphertext) + b64decode_str(data.auth_tag)
        try:
            return AESGCM(key).decrypt(b64decode_str(data.iv), sealed, _context_aad(context))
        except InvalidTag as exc:
            # Tampered ciphertext, tag, or a context that differs from encryption time.
            raise ValueError("Decryption failed: authentication tag mismatch") from exc

    def decrypt(self, data: EncryptedData, context: Mapping[str, Any] | None = None) -> str:
        return self.decrypt_bytes(data, context).decode("utf-8")

    def hash_identifier(self, value: str, salt: str | None = None) -> str:
        # Deterministic so equal identifiers stay searchable once hashed.
        message = f"{salt if salt is not None else self._hash_salt}:{value}".encode("utf-8")
        return hmac.new(self._hash_key, message, hashlib.sha256).hexdigest()

    def create_integrity_signature(self, data: str | bytes) -> str:
        raw = data.encode("utf-8") if isinstance(data, str) else data
        return hmac.new(self._integrity_key, raw, hashlib.sha256).hexdigest()

    def verify_integrity_signature(self, data: str | bytes, signature: str) -> bool:
        expected = self.create_integrity_signature(data)
        return hmac.compare_digest(expected, signature)

    def generate_data_key(self) -> DataKey:
        # Plaintext key for immediate use; the encrypted form is what gets stored.
        plaintext = secrets.token_bytes(_KEY_BYTES)
        encrypted = json.dumps(self.encrypt(plaintext.hex()).to_dict(), sort_keys=True)
        return DataKey(plaintext=plaintext, encrypted=encrypted)

    def decrypt_data_key(self, encrypted: str) -> bytes:
        return bytes.fromhex(self.decrypt(EncryptedData.from_dict(json.loads(encrypted))))

    def encrypt_object(
        self,
        obj: Mapping[str, Any],
        fields: Sequence[str],
        context: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        result = dict(obj)
        encrypted_fields: list[str] = []
        for field in fields:
            value = result.get(field)
            if value is None:
                continue
            result[field] = self.encrypt(json.dumps(value), context).to_dict()
            encrypted_fields.append(field)
        result[_ENCRYPTED_FIELDS_KEY] = encrypted_fields
        return result

    def decrypt_object(
        self,
        obj: Mapping[str, Any],
        context: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        result = dict(obj)
        for field in result.pop(_ENCRYPTED_FIELDS_KEY, None) or []:
            payload = result.get(field)
            if payload is None:
                continue
            result[field] = json.loads(self.decrypt(EncryptedData.from_dict(payload), context))
        return result


def generate_secure_token(length: int = 32) -> str:
    # Hex output, two characters per random byte.
    return secrets.token_hex(length)


_encryption_service: EncryptionService | None = None


def get_encryption_service() -> EncryptionService:
    global _encryption_service
    if _encryption_service is None:
        _encryption_service = EncryptionService()
        logger.info("encryption_service_ready key_version=%s", _encryption_service.key_version)
    return _encryption_service


def reset_encryption_service() -> None:
    # Drop the cached service so tests can swap master keys.
    global _encryption_service
    _encryption_service = None
