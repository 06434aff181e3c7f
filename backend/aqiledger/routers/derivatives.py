from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_db
from ..lifecycle import DerivativeType
from ..schemas import DerivativeOut, LineageOut
from ..traversal import get_daily_logs, get_derivative, verify_proof_chain

router = APIRouter(prefix="/api/derivatives", tags=["derivatives"])


@router.get("/{derivative_id}", response_model=DerivativeOut)
async def read_derivative(derivative_id: str, db: AsyncSession = Depends(get_db)):
    derivative = await get_derivative(db, derivative_id)
    if derivative is None:
        raise HTTPException(status_code=404, detail="Derivative not found")
    return DerivativeOut.model_validate(derivative)


@router.get("/{derivative_id}/lineage", response_model=LineageOut)
async def read_lineage(derivative_id: str, db: AsyncSession = Depends(get_db)):
    derivative = await get_derivative(db, derivative_id)
    if derivative is None:
        raise HTTPException(status_code=404, detail="Derivative not found")

    daily_ids: list[str] = []
    if derivative.type == DerivativeType.MONTHLY.value:
        daily_ids = [d.derivative_id for d in await get_daily_logs(db, derivative_id)]

    return LineageOut(
        derivative_id=derivative.derivative_id,
        type=derivative.type,
        meta_parent_id=derivative.meta_parent_id,
        daily_ids=daily_ids,
        reading_ids=list(derivative.parent_data_ids or []),
        proof_chain_valid=await verify_proof_chain(db, derivative_id),
    )
