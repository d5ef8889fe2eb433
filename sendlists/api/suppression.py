"""Suppression API: suppress, reactivate, check and audit."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from sendlists.database import get_db
from sendlists.schemas import (
    BulkSuppressionResult,
    BulkSuppressRequest,
    ContactOut,
    ReactivateRequest,
    SuppressionCheck,
    SuppressionEntryOut,
    SuppressRequest,
)
from sendlists.services.suppression import SuppressionService

router = APIRouter(prefix="/suppression", tags=["suppression"])


@router.get("/")
async def list_suppressed(
    page: int = Query(1, ge=1),
    page_size: int = Query(100, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
):
    return await SuppressionService(db).get_all_suppressed_contacts(page=page, page_size=page_size)


@router.post("/", response_model=SuppressionEntryOut, status_code=201)
async def suppress_contact(data: SuppressRequest, db: AsyncSession = Depends(get_db)):
    return await SuppressionService(db).suppress_contact(
        contact_id=data.contact_id,
        reason=data.reason,
        suppressed_by=data.suppressed_by,
        ai_rationale=data.ai_rationale,
        confidence=data.confidence,
        source_campaign_id=data.source_campaign_id,
        metadata=data.metadata,
    )


@router.post("/bulk", response_model=BulkSuppressionResult)
async def bulk_suppress(data: BulkSuppressRequest, db: AsyncSession = Depends(get_db)):
    return await SuppressionService(db).bulk_suppress_contacts(data.entries)


@router.get("/stats")
async def suppression_stats(db: AsyncSession = Depends(get_db)):
    return await SuppressionService(db).get_suppression_stats()


@router.get("/check/{contact_id_or_email}", response_model=SuppressionCheck)
async def check_suppression(contact_id_or_email: str, db: AsyncSession = Depends(get_db)):
    return await SuppressionService(db).is_contact_suppressed(contact_id_or_email)


@router.post("/{contact_id}/reactivate", response_model=ContactOut)
async def reactivate_contact(contact_id: str, data: ReactivateRequest, db: AsyncSession = Depends(get_db)):
    contact = await SuppressionService(db).reactivate_contact(
        contact_id, reactivated_by=data.reactivated_by, reason=data.reason
    )
    return ContactOut.from_model(contact)


@router.get("/{contact_id}/history", response_model=list[SuppressionEntryOut])
async def suppression_history(contact_id: str, db: AsyncSession = Depends(get_db)):
    return await SuppressionService(db).get_suppression_history(contact_id)


@router.delete("/{contact_id}/cache", status_code=204)
async def clear_suppression_cache(contact_id: str, db: AsyncSession = Depends(get_db)):
    await SuppressionService(db).clear_suppression_cache(contact_id)
