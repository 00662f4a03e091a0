"""Tests for descriptor sealing and evidence encryption."""

from __future__ import annotations

import numpy as np
import pytest
from cryptography.fernet import Fernet

from src.common.crypto import (
    DescriptorCipher,
    InvalidToken,
    PlainDescriptor,
    SealedDescriptor,
    decrypt_bytes,
    encrypt_bytes,
)


def test_seal_and_open_preserve_values():
    cipher = DescriptorCipher(Fernet.generate_key())
    plain = PlainDescriptor(np.array([[0.25, 0.5], [0.75, 1.0]]))

    sealed = cipher.seal(plain)
    opened = cipher.open(sealed)

    assert len(plain) == 4
    assert isinstance(sealed, SealedDescriptor)
    np.testing.assert_array_equal(opened.values, [0.25, 0.5, 0.75, 1.0])


def test_cipher_refuses_ambiguous_payloads():
    cipher = DescriptorCipher(Fernet.generate_key())

    with pytest.raises(TypeError):
        cipher.seal(np.zeros(3))
    with pytest.raises(TypeError):
        cipher.open(b"token")


def test_wrong_key_cannot_open():
    sealed = DescriptorCipher(Fernet.generate_key()).seal(PlainDescriptor(np.ones(3)))

    with pytest.raises(InvalidToken):
        DescriptorCipher(Fernet.generate_key()).open(sealed)


def test_evidence_encryption_uses_data_key(settings):
    token = encrypt_bytes(b"evidence")

    assert token != b"evidence"
    assert Fernet(settings.DATA_ENCRYPTION_KEY).decrypt(token) == b"evidence"
    assert decrypt_bytes(token) == b"evidence"
