"""Centralised Fernet helpers for encrypting biometric descriptors and evidence."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

import numpy as np
from cryptography.fernet import Fernet, InvalidToken
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

BytesLike = Union[bytes, bytearray, memoryview]


def _coerce_key_bytes(key: BytesLike | str) -> bytes:
    """Normalise the configured Fernet key to ``bytes``."""

    if isinstance(key, str):
        return key.encode()
    return bytes(key)


@dataclass(slots=True)
class _FernetWrapper:
    """Lazily instantiate a Fernet cipher using a Django setting."""

    setting_name: str
    key_override: BytesLike | str | None = None
    _cipher: Fernet | None = None

    def _resolve_key(self) -> bytes:
        key = self.key_override
        if key is None:
            key = getattr(settings, self.setting_name, None)
        if key is None:
            raise ImproperlyConfigured(f"{self.setting_name} is not configured.")

        key_bytes = _coerce_key_bytes(key)
        try:
            Fernet(key_bytes)
        except (TypeError, ValueError) as exc:  # pragma: no cover - defensive
            raise ImproperlyConfigured(f"{self.setting_name} is invalid.") from exc
        return key_bytes

    def _get_cipher(self) -> Fernet:
        if self._cipher is None:
            self._cipher = Fernet(self._resolve_key())
        return self._cipher

    def encrypt(self, payload: BytesLike) -> bytes:
        if not isinstance(payload, (bytes, bytearray, memoryview)):
            raise TypeError("encrypt expects a bytes-like object")
        return self._get_cipher().encrypt(bytes(payload))

    def decrypt(self, token: BytesLike) -> bytes:
        if not isinstance(token, (bytes, bytearray, memoryview)):
            raise TypeError("decrypt expects a bytes-like object")
        return self._get_cipher().decrypt(bytes(token))


@dataclass(frozen=True)
class PlainDescriptor:
    """A face descriptor in the clear. Never persisted as-is."""

    values: np.ndarray

    def __post_init__(self) -> None:
        array = np.asarray(self.values, dtype=np.float64).reshape(-1)
        object.__setattr__(self, "values", array)

    def __len__(self) -> int:
        return int(self.values.shape[0])


@dataclass(frozen=True)
class SealedDescriptor:
    """Fernet ciphertext of a :class:`PlainDescriptor`."""

    token: bytes

    def __post_init__(self) -> None:
        if not isinstance(self.token, (bytes, bytearray, memoryview)):
            raise TypeError("SealedDescriptor expects a bytes-like token")
        object.__setattr__(self, "token", bytes(self.token))


class DescriptorCipher:
    """Seal and open face descriptors with the facial data key.

    The caller always states which side of the boundary it holds by passing a
    :class:`PlainDescriptor` or :class:`SealedDescriptor`; the cipher never
    guesses from the payload.
    """

    def __init__(self, key: BytesLike | str | None = None) -> None:
        self._helper = _FernetWrapper("FACE_DATA_ENCRYPTION_KEY", key_override=key)

    def seal(self, descriptor: PlainDescriptor) -> SealedDescriptor:
        if not isinstance(descriptor, PlainDescriptor):
            raise TypeError("seal expects a PlainDescriptor")
        return SealedDescriptor(self._helper.encrypt(descriptor.values.tobytes()))

    def open(self, sealed: SealedDescriptor) -> PlainDescriptor:
        if not isinstance(sealed, SealedDescriptor):
            raise TypeError("open expects a SealedDescriptor")
        decrypted = self._helper.decrypt(sealed.token)
        return PlainDescriptor(np.frombuffer(decrypted, dtype=np.float64).copy())


_data_encryption = _FernetWrapper("DATA_ENCRYPTION_KEY")


def encrypt_bytes(data: BytesLike) -> bytes:
    """Encrypt an arbitrary payload (e.g. fraud evidence) with the data key."""

    return _data_encryption.encrypt(data)


def decrypt_bytes(token: BytesLike) -> bytes:
    """Decrypt data previously encrypted via :func:`encrypt_bytes`."""

    return _data_encryption.decrypt(token)


__all__ = [
    "DescriptorCipher",
    "InvalidToken",
    "PlainDescriptor",
    "SealedDescriptor",
    "decrypt_bytes",
    "encrypt_bytes",
]
