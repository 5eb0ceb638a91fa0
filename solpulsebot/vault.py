"""Encryption of signer secrets at rest.

The cipher key is derived from a user passphrase with PBKDF2-HMAC-SHA256 and a
per-record salt. Each record gets a fresh 12-byte IV; the GCM authentication
tag is stored separately and the public address is bound as associated data,
so a record cannot be decrypted under a different address.
"""

import os
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from . import config
from .custody import Signer, from_secret_bytes
from .errors import InputValidationError, InvalidPassphrase

TAG_SIZE = 16
IV_SIZE = 12
SALT_SIZE = 16
MIN_PASSPHRASE_LENGTH = 8


@dataclass(frozen=True)
class WalletRecord:
    public_address: str
    ciphertext: bytes
    iv: bytes
    auth_tag: bytes
    salt: bytes


def derive_key(passphrase: str, salt: bytes, iterations: Optional[int] = None) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations or config.KDF_ITERATIONS,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def seal(signer: Signer, passphrase: str) -> WalletRecord:
    """Encrypt the secret of ``signer`` under ``passphrase``."""
    if len(passphrase) < MIN_PASSPHRASE_LENGTH:
        raise InputValidationError(
            f"Passphrase must be at least {MIN_PASSPHRASE_LENGTH} characters"
        )
    salt = os.urandom(SALT_SIZE)
    iv = os.urandom(IV_SIZE)
    key = derive_key(passphrase, salt)
    sealed = AESGCM(key).encrypt(
        iv, signer.secret_bytes(), signer.public_address.encode()
    )
    return WalletRecord(
        public_address=signer.public_address,
        ciphertext=sealed[:-TAG_SIZE],
        iv=iv,
        auth_tag=sealed[-TAG_SIZE:],
        salt=salt,
    )


def unseal(record: WalletRecord, passphrase: str) -> Signer:
    """Decrypt ``record`` and return its signer.

    Raises :class:`InvalidPassphrase` when the authentication tag does not
    verify, which covers both a wrong passphrase and a tampered record.
    """
    key = derive_key(passphrase, record.salt)
    try:
        secret = AESGCM(key).decrypt(
            record.iv,
            record.ciphertext + record.auth_tag,
            record.public_address.encode(),
        )
    except InvalidTag as exc:
        raise InvalidPassphrase() from exc
    signer = from_secret_bytes(secret)
    if signer.public_address != record.public_address:
        signer.wipe()
        raise InvalidPassphrase("Decrypted key does not match the stored address")
    return signer
