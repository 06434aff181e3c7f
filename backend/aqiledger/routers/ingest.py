import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings
from ..deps import get_db, get_settings, require_owner
from ..errors import BatchClosedError, ConcurrencyError, ValidationError
from ..ingestion import ingest_reading
from ..schemas import IngestIn, IngestOut

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["ingest"])


@router.post("/ingest", response_model=IngestOut, status_code=201)
async def ingest(
    payload: IngestIn,
    owner_id: str = Depends(require_owner),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    try:
        reading = await ingest_reading(
            db,
            owner_id,
            payload.device_id,
            payload.sensor_data,
            payload.timestamp,
            max_attempts=settings.ingest_max_attempts,
        )
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail={"message": str(exc), "field": exc.field}) from exc
    except BatchClosedError as exc:
        raise HTTPException(status_code=409, detail={"message": str(exc), "code": exc.code}) from exc
    except ConcurrencyError as exc:
        logger.warning("Ingestion for %s gave up: %s", payload.device_id, exc)
        raise HTTPException(status_code=503, detail=str(exc)) from exc

    return IngestOut(
        reading_id=reading.reading_id,
        status=reading.status,
        ingestion_count=reading.ingestion_count,
        batch_window=reading.batch_window.as_dict(),
    )
