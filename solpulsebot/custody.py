"""Keypair generation and import.

Signers are derived either from raw secret material or from a BIP39 recovery
phrase using the fixed path ``m/44'/501'/0'/0'`` so that the same phrase
always reproduces the same address. Nothing in this module logs or transmits
secret material.
"""

import json
from typing import Optional

import base58
from bip_utils import (
    Bip39MnemonicGenerator,
    Bip39MnemonicValidator,
    Bip39SeedGenerator,
    Bip39WordsNum,
    Bip44,
    Bip44Changes,
    Bip44Coins,
)
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature

from .errors import InvalidKeyFormat, InvalidMnemonic


class Signer:
    """Opaque signing capability owned by a single session.

    The 64-byte secret is kept in a mutable buffer so :meth:`wipe` can zero it
    when the wallet is disconnected.
    """

    __slots__ = ("public_address", "_secret", "_phrase")

    def __init__(
        self, secret: bytes, public_address: str, recovery_phrase: Optional[str] = None
    ) -> None:
        self._secret = bytearray(secret)
        self.public_address = public_address
        self._phrase = recovery_phrase

    def __repr__(self) -> str:
        return f"Signer({self.public_address})"

    @property
    def recovery_phrase(self) -> Optional[str]:
        return self._phrase

    @property
    def wiped(self) -> bool:
        return not any(self._secret)

    def keypair(self) -> Keypair:
        """Return a solders keypair for signing a transaction."""
        if self.wiped:
            raise InvalidKeyFormat("Signer has been wiped")
        return Keypair.from_bytes(bytes(self._secret))

    def secret_bytes(self) -> bytes:
        """Return a copy of the secret for encryption at rest."""
        return bytes(self._secret)

    def sign_message(self, message: bytes) -> Signature:
        return self.keypair().sign_message(message)

    def verify(self, message: bytes, signature: Signature) -> bool:
        return signature.verify(Pubkey.from_string(self.public_address), message)

    def export_secret(self) -> str:
        """Return the secret key base58 encoded, as wallets display it."""
        return base58.b58encode(bytes(self._secret)).decode()

    def wipe(self) -> None:
        for i in range(len(self._secret)):
            self._secret[i] = 0
        self._phrase = None


def _from_keypair(keypair: Keypair, phrase: Optional[str] = None) -> Signer:
    return Signer(bytes(keypair), str(keypair.pubkey()), phrase)


def normalize_phrase(phrase: str) -> str:
    return " ".join(phrase.lower().split())


def generate(mnemonic: bool = True) -> Signer:
    """Create a fresh signer, backed by a new 12-word phrase by default."""
    if not mnemonic:
        return _from_keypair(Keypair())
    phrase = Bip39MnemonicGenerator().FromWordsNumber(Bip39WordsNum.WORDS_NUM_12)
    return import_from_phrase(phrase.ToStr())


def import_from_phrase(phrase: str) -> Signer:
    """Derive the signer for ``phrase`` at the fixed derivation path.

    The checksum is validated before any derivation is attempted.
    """
    phrase = normalize_phrase(phrase)
    if not phrase or not Bip39MnemonicValidator().IsValid(phrase):
        raise InvalidMnemonic()
    seed = Bip39SeedGenerator(phrase).Generate()
    account = (
        Bip44.FromSeed(seed, Bip44Coins.SOLANA)
        .Purpose()
        .Coin()
        .Account(0)
        .Change(Bip44Changes.CHAIN_EXT)
    )
    keypair = Keypair.from_seed(account.PrivateKey().Raw().ToBytes())
    return _from_keypair(keypair, phrase)


def _decode_secret(encoded: str) -> bytes:
    encoded = encoded.strip()
    if encoded.startswith("["):
        values = json.loads(encoded)
        if not isinstance(values, list):
            raise ValueError("expected a list of bytes")
        return bytes(values)
    return base58.b58decode(encoded)


def import_from_secret(encoded: str) -> Signer:
    """Rebuild a signer from a base58 secret key, seed or JSON byte array."""
    try:
        raw = _decode_secret(encoded)
    except (TypeError, ValueError) as exc:
        raise InvalidKeyFormat() from exc
    return from_secret_bytes(raw)


def from_secret_bytes(raw: bytes) -> Signer:
    """Rebuild a signer from a 32-byte seed or a 64-byte secret key."""
    if len(raw) == 32:
        return _from_keypair(Keypair.from_seed(raw))
    if len(raw) != 64:
        raise InvalidKeyFormat(f"Expected 64 key bytes, got {len(raw)}")
    try:
        keypair = Keypair.from_seed(raw[:32])
    except ValueError as exc:
        raise InvalidKeyFormat() from exc
    if bytes(keypair.pubkey()) != raw[32:]:
        raise InvalidKeyFormat("Public half does not match the secret key")
    return _from_keypair(keypair)
