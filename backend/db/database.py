import logging
import aiosqlite
import os

logger = logging.getLogger("splitbill.db")
DB_PATH = os.environ.get("DB_PATH", "/data/splitbill.db")

async def get_db() -> aiosqlite.Connection:
    """Dependency: yields an open DB connection."""
    async with aiosqlite.connect(DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        yield db

async def init_db(db_path: str = None):
    """Create all tables if they don't exist."""
    db_path = db_path or DB_PATH
    os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
    async with aiosqlite.connect(db_path) as db:
        await db.executescript(SCHEMA)
        await db.commit()
    logger.info("Initialized at %s", db_path)


SCHEMA = """
-- Extractions the user kept (newest first, capped by the history service)
CREATE TABLE IF NOT EXISTS bill_history (
    id                          TEXT PRIMARY KEY,      -- bill_<ms>_<hex>
    created_at                  INTEGER NOT NULL,      -- epoch milliseconds
    file_name                   TEXT NOT NULL,
    currency                    TEXT NOT NULL DEFAULT 'USD',
    vat_percentage              REAL NOT NULL DEFAULT 0,
    service_charge_percentage   REAL NOT NULL DEFAULT 0,
    total_amount                REAL NOT NULL,         -- recomputed on save, never client-supplied
    items_json                  TEXT NOT NULL,         -- JSON array of line items (camelCase keys)
    original_image_url          TEXT                   -- data: URL, only for small images
);

CREATE INDEX IF NOT EXISTS idx_bill_history_created_at ON bill_history(created_at);
"""
