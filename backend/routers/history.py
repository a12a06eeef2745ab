"""
History Router

GET    /api/history          — list saved bills, newest first
POST   /api/history          — save an extraction (total is recomputed server-side)
DELETE /api/history          — clear all history
GET    /api/history/stats    — entry count and stored size
GET    /api/history/{id}     — one saved bill
DELETE /api/history/{id}     — remove one saved bill
"""
from fastapi import APIRouter, Depends, HTTPException
import aiosqlite

from db.database import get_db
from models.schemas import HistoryEntry, HistoryEntryCreate, HistoryStats
from services.errors import SplitError
from services.history_service import BillHistoryRepository, SqliteHistoryBackend

router = APIRouter()


async def get_history_repository(
    db: aiosqlite.Connection = Depends(get_db),
) -> BillHistoryRepository:
    return BillHistoryRepository(SqliteHistoryBackend(db))


@router.get("", response_model=list[HistoryEntry])
async def list_history(repo: BillHistoryRepository = Depends(get_history_repository)):
    return await repo.list()


@router.post("", response_model=HistoryEntry, status_code=201)
async def save_history_entry(
    body: HistoryEntryCreate,
    repo: BillHistoryRepository = Depends(get_history_repository),
):
    if not body.items:
        raise HTTPException(status_code=422, detail="A saved bill needs at least one item")
    try:
        return await repo.save(body)
    except SplitError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.delete("")
async def clear_history(repo: BillHistoryRepository = Depends(get_history_repository)):
    await repo.clear()
    return {"status": "cleared"}


@router.get("/stats", response_model=HistoryStats)
async def history_stats(repo: BillHistoryRepository = Depends(get_history_repository)):
    return await repo.stats()


@router.get("/{entry_id}", response_model=HistoryEntry)
async def get_history_entry(
    entry_id: str,
    repo: BillHistoryRepository = Depends(get_history_repository),
):
    entry = await repo.get(entry_id)
    if not entry:
        raise HTTPException(status_code=404, detail="Bill not found")
    return entry


@router.delete("/{entry_id}")
async def delete_history_entry(
    entry_id: str,
    repo: BillHistoryRepository = Depends(get_history_repository),
):
    if not await repo.delete(entry_id):
        raise HTTPException(status_code=404, detail="Bill not found")
    return {"status": "deleted"}
