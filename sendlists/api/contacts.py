"""Contact API."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from sendlists.database import get_db
from sendlists.schemas import ContactCreate, ContactOut, ContactUpdate, ListOut
from sendlists.services.contacts import ContactService
from sendlists.services.errors import NotFoundError

router = APIRouter(prefix="/contacts", tags=["contacts"])


@router.post("/", response_model=ContactOut, status_code=201)
async def create_contact(data: ContactCreate, db: AsyncSession = Depends(get_db)):
    contact = await ContactService(db).create_or_get_contact(
        email=data.email,
        name=data.name,
        first_name=data.first_name,
        last_name=data.last_name,
        external_id=data.external_id,
        properties=data.properties,
    )
    return ContactOut.from_model(contact)


@router.get("/by-email/{email}", response_model=ContactOut)
async def get_contact_by_email(email: str, db: AsyncSession = Depends(get_db)):
    contact = await ContactService(db).get_contact_by_email(email)
    if contact is None:
        raise NotFoundError("Contact", email)
    return ContactOut.from_model(contact)


@router.get("/{contact_id}", response_model=ContactOut)
async def get_contact(contact_id: str, db: AsyncSession = Depends(get_db)):
    return ContactOut.from_model(await ContactService(db).require_contact(contact_id))


@router.patch("/{contact_id}", response_model=ContactOut)
async def update_contact(contact_id: str, data: ContactUpdate, db: AsyncSession = Depends(get_db)):
    contact = await ContactService(db).update_contact(contact_id, **data.model_dump(exclude_unset=True))
    return ContactOut.from_model(contact)


@router.post("/{contact_id}/bounces", response_model=ContactOut)
async def record_bounce(
    contact_id: str,
    bounce_type: str = Query(..., pattern="^(hard|soft|spam)$"),
    db: AsyncSession = Depends(get_db),
):
    return ContactOut.from_model(await ContactService(db).record_bounce(contact_id, bounce_type))


@router.get("/{contact_id}/history")
async def get_contact_history(contact_id: str, db: AsyncSession = Depends(get_db)):
    return await ContactService(db).get_contact_history(contact_id)


@router.get("/{contact_id}/lists", response_model=list[ListOut])
async def get_contact_lists(contact_id: str, db: AsyncSession = Depends(get_db)):
    service = ContactService(db)
    await service.require_contact(contact_id)
    return [contact_list for _, contact_list in await service.get_contact_lists(contact_id)]
