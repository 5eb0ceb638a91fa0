import json

import base58
import pytest
from solders.keypair import Keypair

from solpulsebot import custody
from solpulsebot.errors import InvalidKeyFormat, InvalidMnemonic

PHRASE = (
    "abandon abandon abandon abandon abandon abandon abandon abandon abandon "
    "abandon abandon about"
)


def test_phrase_derivation_is_deterministic():
    first = custody.import_from_phrase(PHRASE)
    second = custody.import_from_phrase(f"  {PHRASE.upper()}  ")
    assert first.public_address == second.public_address
    assert first.recovery_phrase == PHRASE


def test_generate_round_trips_through_phrase():
    signer = custody.generate()
    assert len(signer.recovery_phrase.split()) == 12
    restored = custody.import_from_phrase(signer.recovery_phrase)
    assert restored.public_address == signer.public_address


def test_signature_verifies_against_address():
    signer = custody.generate(mnemonic=False)
    assert signer.recovery_phrase is None
    signature = signer.sign_message(b"swap")
    assert signer.verify(b"swap", signature)
    assert not signer.verify(b"other", signature)


def test_invalid_checksum_rejected():
    with pytest.raises(InvalidMnemonic):
        custody.import_from_phrase("abandon " * 12)


def test_empty_phrase_rejected():
    with pytest.raises(InvalidMnemonic):
        custody.import_from_phrase("   ")


def test_import_base58_secret():
    keypair = Keypair()
    signer = custody.import_from_secret(base58.b58encode(bytes(keypair)).decode())
    assert signer.public_address == str(keypair.pubkey())
    assert signer.export_secret() == base58.b58encode(bytes(keypair)).decode()


def test_import_json_byte_array():
    keypair = Keypair()
    signer = custody.import_from_secret(json.dumps(list(bytes(keypair))))
    assert signer.public_address == str(keypair.pubkey())


def test_import_seed():
    keypair = Keypair()
    seed = bytes(keypair)[:32]
    signer = custody.import_from_secret(base58.b58encode(seed).decode())
    assert signer.public_address == str(keypair.pubkey())


@pytest.mark.parametrize("encoded", ["not-base58-0OIl", "[1, 2, 3", "[300]", "abc"])
def test_import_garbage_rejected(encoded):
    with pytest.raises(InvalidKeyFormat):
        custody.import_from_secret(encoded)


def test_import_mismatched_public_half_rejected():
    first, second = Keypair(), Keypair()
    raw = bytes(first)[:32] + bytes(second.pubkey())
    with pytest.raises(InvalidKeyFormat):
        custody.import_from_secret(base58.b58encode(raw).decode())


def test_wipe_destroys_secret():
    signer = custody.generate()
    signer.wipe()
    assert signer.wiped
    assert signer.recovery_phrase is None
    assert not any(signer.secret_bytes())
    with pytest.raises(InvalidKeyFormat):
        signer.keypair()


def test_repr_hides_secret():
    signer = custody.generate()
    assert repr(signer) == f"Signer({signer.public_address})"
    assert signer.export_secret() not in repr(signer)
