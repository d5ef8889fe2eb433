"""Send-list API: list CRUD, FIFO membership, bulk import, provider sync and health analysis."""

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from sendlists.database import get_db
from sendlists.schemas import (
    AddToListRequest,
    BulkImportRequest,
    BulkImportResult,
    ListContactsPage,
    ListCreate,
    ListHealthAssessment,
    ListMetadata,
    ListOut,
    ListUpdate,
    MembershipOut,
)
from sendlists.services.contacts import ContactService
from sendlists.services.lists import ListService
from sendlists.services.provider import DeliveryProviderClient
from sendlists.services.recommendation import Recommender, get_recommender

router = APIRouter(prefix="/lists", tags=["lists"])


def get_provider() -> DeliveryProviderClient:
    return DeliveryProviderClient()


def get_list_recommender() -> Recommender:
    return get_recommender()


@router.get("/", response_model=list[ListOut])
async def list_lists(
    include_inactive: bool = False,
    list_type: str | None = None,
    db: AsyncSession = Depends(get_db),
):
    service = ListService(db)
    if list_type:
        return await service.get_lists_by_type(list_type)
    return await service.get_all_lists(include_inactive=include_inactive)


@router.post("/", response_model=ListOut, status_code=201)
async def create_list(data: ListCreate, db: AsyncSession = Depends(get_db)):
    return await ListService(db).create_list(
        name=data.name,
        list_type=data.list_type,
        round_number=data.round_number,
        external_list_id=data.external_list_id,
        description=data.description,
    )


@router.post("/sync", response_model=list[ListOut])
async def sync_all_lists(
    db: AsyncSession = Depends(get_db),
    provider: DeliveryProviderClient = Depends(get_provider),
):
    return await ListService(db).sync_all_lists_from_provider(provider)


@router.get("/{list_id}", response_model=ListOut)
async def get_list(list_id: str, db: AsyncSession = Depends(get_db)):
    return await ListService(db).require_list(list_id)


@router.patch("/{list_id}", response_model=ListOut)
async def update_list(list_id: str, data: ListUpdate, db: AsyncSession = Depends(get_db)):
    return await ListService(db).update_list(list_id, **data.model_dump(exclude_unset=True))


@router.delete("/{list_id}", response_model=ListOut)
async def retire_list(list_id: str, db: AsyncSession = Depends(get_db)):
    return await ListService(db).retire_list(list_id)


@router.get("/{list_id}/metadata", response_model=ListMetadata)
async def get_list_metadata(list_id: str, db: AsyncSession = Depends(get_db)):
    metadata = await ListService(db).get_list_metadata(list_id)
    if metadata is None:
        raise HTTPException(404, "List not found")
    return metadata


@router.post("/{list_id}/sync", response_model=ListOut)
async def sync_list(
    list_id: str,
    db: AsyncSession = Depends(get_db),
    provider: DeliveryProviderClient = Depends(get_provider),
):
    return await ListService(db).sync_list_from_provider(list_id, provider)


@router.post("/{list_id}/health/analyze", response_model=ListHealthAssessment)
async def analyze_list_health(
    list_id: str,
    db: AsyncSession = Depends(get_db),
    recommender: Recommender = Depends(get_list_recommender),
):
    return await ListService(db).assess_list_health(list_id, recommender)


# ── Membership ─────────────────────────────────────────
@router.get("/{list_id}/contacts", response_model=ListContactsPage)
async def get_list_contacts(
    list_id: str,
    page: int = Query(1, ge=1),
    page_size: int = Query(100, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
):
    await ListService(db).require_list(list_id)
    return await ContactService(db).get_list_contacts(list_id, page=page, page_size=page_size)


@router.post("/{list_id}/contacts", response_model=MembershipOut, status_code=201)
async def add_contact_to_list(list_id: str, data: AddToListRequest, db: AsyncSession = Depends(get_db)):
    return await ContactService(db).add_contact_to_list(data.contact_id, list_id, position=data.position)


@router.delete("/{list_id}/contacts/{contact_id}", response_model=MembershipOut)
async def remove_contact_from_list(list_id: str, contact_id: str, db: AsyncSession = Depends(get_db)):
    return await ContactService(db).remove_contact_from_list(contact_id, list_id)


@router.post("/{list_id}/import", response_model=BulkImportResult)
async def bulk_import(list_id: str, data: BulkImportRequest, db: AsyncSession = Depends(get_db)):
    return await ContactService(db).bulk_import_contacts(list_id, data.records)
