import dataclasses

import pytest

import solpulsebot.config as config
from solpulsebot import custody, db, vault
from solpulsebot.errors import InputValidationError, InvalidPassphrase

PASSPHRASE = "correct horse battery"


@pytest.fixture(autouse=True)
def fast_kdf(monkeypatch):
    monkeypatch.setattr(config, "KDF_ITERATIONS", 1000)


def test_seal_and_unseal():
    signer = custody.generate(mnemonic=False)
    record = vault.seal(signer, PASSPHRASE)
    assert record.public_address == signer.public_address
    assert len(record.iv) == vault.IV_SIZE
    assert len(record.auth_tag) == vault.TAG_SIZE
    assert signer.secret_bytes() not in record.ciphertext
    restored = vault.unseal(record, PASSPHRASE)
    assert restored.public_address == signer.public_address
    assert restored.secret_bytes() == signer.secret_bytes()


def test_each_seal_uses_fresh_iv_and_salt():
    signer = custody.generate(mnemonic=False)
    first = vault.seal(signer, PASSPHRASE)
    second = vault.seal(signer, PASSPHRASE)
    assert first.iv != second.iv
    assert first.salt != second.salt
    assert first.ciphertext != second.ciphertext


def test_wrong_passphrase_rejected():
    record = vault.seal(custody.generate(mnemonic=False), PASSPHRASE)
    with pytest.raises(InvalidPassphrase):
        vault.unseal(record, "incorrect horse")


def test_tampered_record_rejected():
    record = vault.seal(custody.generate(mnemonic=False), PASSPHRASE)
    flipped = bytes([record.ciphertext[0] ^ 1]) + record.ciphertext[1:]
    with pytest.raises(InvalidPassphrase):
        vault.unseal(dataclasses.replace(record, ciphertext=flipped), PASSPHRASE)


def test_record_bound_to_address():
    record = vault.seal(custody.generate(mnemonic=False), PASSPHRASE)
    other = custody.generate(mnemonic=False).public_address
    with pytest.raises(InvalidPassphrase):
        vault.unseal(dataclasses.replace(record, public_address=other), PASSPHRASE)


def test_short_passphrase_rejected():
    with pytest.raises(InputValidationError):
        vault.seal(custody.generate(mnemonic=False), "short")


@pytest.mark.asyncio
async def test_wallet_record_persistence(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "DB_FILE", str(tmp_path / "wallets.db"))
    await db.init_db()
    assert await db.load_wallet(1) is None

    signer = custody.generate(mnemonic=False)
    record = vault.seal(signer, PASSPHRASE)
    await db.save_wallet(1, record)
    loaded = await db.load_wallet(1)
    assert loaded == record
    assert vault.unseal(loaded, PASSPHRASE).public_address == signer.public_address

    replacement = vault.seal(custody.generate(mnemonic=False), PASSPHRASE)
    await db.save_wallet(1, replacement)
    assert await db.load_wallet(1) == replacement

    await db.delete_wallet(1)
    assert await db.load_wallet(1) is None
