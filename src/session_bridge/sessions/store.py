"""Persistent session storage.

Holds at most one :class:`PlatformSessionData` per (identity, platform).
Records live in memory and are written through to a JSON file, which is
Fernet-encrypted when a passphrase is configured. A missing path keeps
everything in memory.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import os
from pathlib import Path

import structlog
from cryptography.fernet import Fernet, InvalidToken
from pydantic import ValidationError

from session_bridge.models import PlatformSessionData
from session_bridge.utils.identity import scoped_key

logger = structlog.get_logger()

STORE_FORMAT_VERSION = 1


def _derive_key(passphrase: str) -> bytes:
    """Derive a Fernet key from a passphrase via SHA-256."""
    return base64.urlsafe_b64encode(hashlib.sha256(passphrase.encode()).digest())


def record_key(identity: str, platform: str) -> str:
    return scoped_key(identity, "session", platform)


class SessionStore:
    """Mapping of (identity, platform) to the current captured session.

    Every mutation runs under one lock: it builds the new mapping, writes
    it in a worker thread, and only then swaps it in. A failed write
    leaves both the file and the in-memory state untouched.
    """

    def __init__(self, path: str | Path | None = None, passphrase: str | None = None) -> None:
        self._path = Path(path).expanduser() if path else None
        self._fernet = Fernet(_derive_key(passphrase)) if passphrase else None
        self._lock = asyncio.Lock()
        self._records: dict[str, PlatformSessionData] = self._load()
        if self._path is not None and self._fernet is None:
            logger.warning(
                "session_store_unencrypted",
                path=str(self._path),
                hint="set storage.passphrase to encrypt stored cookies and credentials",
            )

    @property
    def path(self) -> Path | None:
        return self._path

    @property
    def encrypted(self) -> bool:
        return self._fernet is not None

    async def save(self, record: PlatformSessionData) -> None:
        """Store ``record``, replacing any previous record for the same pair."""
        key = record_key(record.identity, record.platform)
        async with self._lock:
            records = dict(self._records)
            replaced = records.pop(key, None)
            records[key] = record
            await self._commit(records)
        logger.info(
            "session_stored",
            key=record.key.short,
            replaced=replaced is not None,
            cookies=sorted(record.cookies),
        )

    async def get(self, identity: str, platform: str) -> PlatformSessionData | None:
        return self._records.get(record_key(identity, platform))

    async def delete(self, identity: str, platform: str) -> bool:
        """Delete the record for one pair. Returns False if there was none."""
        key = record_key(identity, platform)
        async with self._lock:
            if key not in self._records:
                return False
            await self._commit({k: v for k, v in self._records.items() if k != key})
        logger.info("session_deleted", identity=identity[:8], platform=platform)
        return True

    async def delete_session(self, internal_session_id: str) -> list[PlatformSessionData]:
        """Delete every record bridged under an internal session id."""
        async with self._lock:
            removed = [r for r in self._records.values() if r.internal_session_id == internal_session_id]
            if removed:
                await self._commit(
                    {k: v for k, v in self._records.items() if v.internal_session_id != internal_session_id}
                )
        if removed:
            logger.info("internal_session_deleted", count=len(removed))
        return removed

    async def clear(self) -> int:
        """Delete all records. Returns how many were removed."""
        async with self._lock:
            count = len(self._records)
            await self._commit({})
        logger.info("store_cleared", count=count)
        return count

    async def list_records(self, platform: str | None = None) -> list[PlatformSessionData]:
        records = list(self._records.values())
        if platform is not None:
            records = [r for r in records if r.platform == platform]
        return records

    async def _commit(self, records: dict[str, PlatformSessionData]) -> None:
        if self._path is not None:
            # Serialization, encryption and the file write stay off the event loop
            await asyncio.to_thread(self._persist, records)
        self._records = records

    def _persist(self, records: dict[str, PlatformSessionData]) -> None:
        payload = json.dumps(
            {
                "version": STORE_FORMAT_VERSION,
                "sessions": [record.model_dump(mode="json") for record in records.values()],
            },
            indent=None if self._fernet else 2,
        ).encode()
        if self._fernet is not None:
            payload = self._fernet.encrypt(payload)

        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_bytes(payload)
        tmp_path.chmod(0o600)
        os.replace(tmp_path, self._path)

    def _load(self) -> dict[str, PlatformSessionData]:
        if self._path is None or not self._path.exists():
            return {}

        try:
            raw = self._path.read_bytes()
            if self._fernet is not None:
                raw = self._fernet.decrypt(raw)
            data = json.loads(raw)
            sessions = [PlatformSessionData.model_validate(item) for item in data.get("sessions", [])]
        except (InvalidToken, ValueError, AttributeError, ValidationError):
            logger.warning("session_store_unreadable", path=str(self._path), encrypted=self.encrypted)
            return {}

        records = {record_key(s.identity, s.platform): s for s in sessions}
        logger.debug("session_store_loaded", path=str(self._path), count=len(records))
        return records
