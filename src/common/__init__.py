"""Common utilities shared across the project."""

from .crypto import (
    DescriptorCipher,
    InvalidToken,
    PlainDescriptor,
    SealedDescriptor,
    decrypt_bytes,
    encrypt_bytes,
)

__all__ = [
    "DescriptorCipher",
    "InvalidToken",
    "PlainDescriptor",
    "SealedDescriptor",
    "decrypt_bytes",
    "encrypt_bytes",
]
