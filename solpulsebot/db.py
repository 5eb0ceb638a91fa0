"""Asynchronous SQLite helpers for encrypted wallet records."""

import time
from typing import Optional

import aiosqlite

from . import config
from .vault import WalletRecord


async def init_db() -> None:
    """Create database tables if they do not already exist."""
    async with aiosqlite.connect(config.DB_FILE) as db:
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS wallets (
                user_id INTEGER PRIMARY KEY,
                public_address TEXT NOT NULL,
                ciphertext BLOB NOT NULL,
                iv BLOB NOT NULL,
                auth_tag BLOB NOT NULL,
                salt BLOB NOT NULL,
                saved_at REAL
            )
            """
        )
        await db.commit()


async def save_wallet(user_id: int, record: WalletRecord) -> None:
    """Store or replace the encrypted wallet for ``user_id``."""
    async with aiosqlite.connect(config.DB_FILE) as db:
        await db.execute(
            (
                "REPLACE INTO wallets (user_id, public_address, ciphertext, iv, "
                "auth_tag, salt, saved_at) VALUES (?, ?, ?, ?, ?, ?, ?)"
            ),
            (
                user_id,
                record.public_address,
                record.ciphertext,
                record.iv,
                record.auth_tag,
                record.salt,
                time.time(),
            ),
        )
        await db.commit()
    config.logger.info("user %s saved wallet %s", user_id, record.public_address)


async def load_wallet(user_id: int) -> Optional[WalletRecord]:
    """Return the stored wallet record for ``user_id`` if present."""
    async with aiosqlite.connect(config.DB_FILE) as db:
        cursor = await db.execute(
            (
                "SELECT public_address, ciphertext, iv, auth_tag, salt "
                "FROM wallets WHERE user_id=?"
            ),
            (user_id,),
        )
        row = await cursor.fetchone()
        await cursor.close()
    if not row:
        return None
    address, ciphertext, iv, tag, salt = row
    return WalletRecord(
        public_address=address,
        ciphertext=bytes(ciphertext),
        iv=bytes(iv),
        auth_tag=bytes(tag),
        salt=bytes(salt),
    )


async def delete_wallet(user_id: int) -> None:
    """Remove the stored wallet for ``user_id``."""
    async with aiosqlite.connect(config.DB_FILE) as db:
        await db.execute("DELETE FROM wallets WHERE user_id=?", (user_id,))
        await db.commit()
    config.logger.info("user %s deleted stored wallet", user_id)

