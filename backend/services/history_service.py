"""
History Service

Past extractions, newest first, capped at MAX_HISTORY_ENTRIES.

BillHistoryRepository holds the rules (ids, totals, image size limit, cap);
the storage backend it is given only stores and returns entries:

  InMemoryHistoryBackend   — tests and throwaway sessions
  SqliteHistoryBackend     — the bill_history table (see db/database.py)
"""
import json
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Optional, Protocol

import aiosqlite

from models.schemas import HistoryEntry, HistoryEntryCreate, HistoryStats
from services.extraction_service import bill_total, line_subtotal
from services.split_service import check_amounts

logger = logging.getLogger("splitbill.history")

MAX_HISTORY_ENTRIES = 50
MAX_STORED_IMAGE_BYTES = 500_000


class HistoryBackend(Protocol):
    async def insert(self, entry: HistoryEntry) -> None: ...
    async def fetch_all(self) -> list[HistoryEntry]: ...
    async def fetch(self, entry_id: str) -> Optional[HistoryEntry]: ...
    async def remove(self, entry_id: str) -> bool: ...
    async def remove_all(self) -> None: ...
    async def keep_newest(self, limit: int) -> int: ...


class InMemoryHistoryBackend:
    def __init__(self):
        self._entries: list[HistoryEntry] = []   # newest first

    async def insert(self, entry: HistoryEntry) -> None:
        self._entries.insert(0, entry)

    async def fetch_all(self) -> list[HistoryEntry]:
        return list(self._entries)

    async def fetch(self, entry_id: str) -> Optional[HistoryEntry]:
        return next((e for e in self._entries if e.id == entry_id), None)

    async def remove(self, entry_id: str) -> bool:
        before = len(self._entries)
        self._entries = [e for e in self._entries if e.id != entry_id]
        return len(self._entries) < before

    async def remove_all(self) -> None:
        self._entries = []

    async def keep_newest(self, limit: int) -> int:
        dropped = len(self._entries) - limit
        if dropped <= 0:
            return 0
        self._entries = self._entries[:limit]
        return dropped


class SqliteHistoryBackend:
    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    @staticmethod
    def _row_to_entry(row) -> HistoryEntry:
        return HistoryEntry(
            id=row["id"],
            timestamp=row["created_at"],
            file_name=row["file_name"],
            items=json.loads(row["items_json"]),
            currency=row["currency"],
            vat_percentage=row["vat_percentage"],
            service_charge_percentage=row["service_charge_percentage"],
            original_image_url=row["original_image_url"],
            total_amount=row["total_amount"],
        )

    async def insert(self, entry: HistoryEntry) -> None:
        await self.db.execute(
            """INSERT INTO bill_history
               (id, created_at, file_name, currency, vat_percentage,
                service_charge_percentage, total_amount, items_json, original_image_url)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (entry.id, entry.timestamp, entry.file_name, entry.currency,
             entry.vat_percentage, entry.service_charge_percentage, entry.total_amount,
             json.dumps([i.model_dump(by_alias=True) for i in entry.items], ensure_ascii=False),
             entry.original_image_url),
        )
        await self.db.commit()

    async def fetch_all(self) -> list[HistoryEntry]:
        async with self.db.execute(
            "SELECT * FROM bill_history ORDER BY created_at DESC, rowid DESC"
        ) as cur:
            rows = await cur.fetchall()
        return [self._row_to_entry(r) for r in rows]

    async def fetch(self, entry_id: str) -> Optional[HistoryEntry]:
        async with self.db.execute(
            "SELECT * FROM bill_history WHERE id = ?", (entry_id,)
        ) as cur:
            row = await cur.fetchone()
        return self._row_to_entry(row) if row else None

    async def remove(self, entry_id: str) -> bool:
        cur = await self.db.execute("DELETE FROM bill_history WHERE id = ?", (entry_id,))
        await self.db.commit()
        return cur.rowcount > 0

    async def remove_all(self) -> None:
        await self.db.execute("DELETE FROM bill_history")
        await self.db.commit()

    async def keep_newest(self, limit: int) -> int:
        cur = await self.db.execute(
            """DELETE FROM bill_history WHERE id NOT IN (
                   SELECT id FROM bill_history
                   ORDER BY created_at DESC, rowid DESC
                   LIMIT ?
               )""",
            (limit,),
        )
        await self.db.commit()
        return cur.rowcount


def _data_url_size(url: str) -> int:
    """Decoded byte size of a base64 data: URL (estimate from its length)."""
    payload = url.split(",", 1)[1] if "," in url else url
    return len(payload) * 3 // 4


class BillHistoryRepository:
    def __init__(self, backend: HistoryBackend):
        self.backend = backend

    async def save(self, data: HistoryEntryCreate) -> HistoryEntry:
        """Raises SplitError for negative quantities or prices."""
        check_amounts(data.items)
        timestamp = int(time.time() * 1000)
        items = [
            i.model_copy(update={"subtotal": line_subtotal(i.quantity, i.unit_price)})
            for i in data.items
        ]

        image_url = data.original_image_url
        if image_url and _data_url_size(image_url) >= MAX_STORED_IMAGE_BYTES:
            logger.info("Not storing image with history entry (%d KB)", _data_url_size(image_url) // 1024)
            image_url = None

        file_name = data.file_name or (
            f"Receipt-{datetime.fromtimestamp(timestamp / 1000, tz=timezone.utc):%Y-%m-%d}"
        )
        entry = HistoryEntry(
            id=f"bill_{timestamp}_{uuid.uuid4().hex[:9]}",
            timestamp=timestamp,
            file_name=file_name,
            items=items,
            currency=data.currency,
            vat_percentage=data.vat_percentage,
            service_charge_percentage=data.service_charge_percentage,
            original_image_url=image_url,
            total_amount=bill_total([i.subtotal for i in items],
                                    data.vat_percentage, data.service_charge_percentage),
        )
        await self.backend.insert(entry)

        dropped = await self.backend.keep_newest(MAX_HISTORY_ENTRIES)
        if dropped:
            logger.debug("Trimmed %d old history entries", dropped)
        logger.info("Saved history entry %s (%d items)", entry.id, len(items))
        return entry

    async def list(self) -> list[HistoryEntry]:
        return await self.backend.fetch_all()

    async def get(self, entry_id: str) -> Optional[HistoryEntry]:
        return await self.backend.fetch(entry_id)

    async def delete(self, entry_id: str) -> bool:
        return await self.backend.remove(entry_id)

    async def clear(self) -> None:
        await self.backend.remove_all()
        logger.info("History cleared")

    async def stats(self) -> HistoryStats:
        entries = await self.backend.fetch_all()
        serialized = json.dumps([e.model_dump(by_alias=True) for e in entries], ensure_ascii=False)
        return HistoryStats(count=len(entries), size_kb=round(len(serialized) / 1024, 2))
