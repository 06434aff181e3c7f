from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_db, require_owner
from ..ingestion import get_device_readings, get_reading_by_id, get_readings_by_status
from ..lifecycle import ReadingStatus
from ..schemas import ReadingOut

router = APIRouter(prefix="/api/readings", tags=["readings"])


def _parse_status(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    try:
        return ReadingStatus(value.strip().upper()).value
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Unknown status {value!r}") from exc


@router.get("", response_model=list[ReadingOut])
async def list_readings(
    device_id: Optional[str] = Query(default=None),
    status: Optional[str] = Query(default=None),
    limit: int = Query(default=10, ge=1, le=1000),
    owner_id: str = Depends(require_owner),
    db: AsyncSession = Depends(get_db),
):
    status = _parse_status(status)
    if device_id:
        rows = await get_device_readings(db, owner_id, device_id, status=status, limit=limit)
    elif status:
        rows = await get_readings_by_status(db, owner_id, status, limit=limit)
    else:
        raise HTTPException(status_code=400, detail="device_id or status is required")
    return [ReadingOut.model_validate(r) for r in rows]


@router.get("/{reading_id}", response_model=ReadingOut)
async def get_reading(
    reading_id: str,
    owner_id: str = Depends(require_owner),
    db: AsyncSession = Depends(get_db),
):
    reading = await get_reading_by_id(db, owner_id, reading_id)
    if reading is None:
        raise HTTPException(status_code=404, detail="Reading not found")
    return ReadingOut.model_validate(reading)
