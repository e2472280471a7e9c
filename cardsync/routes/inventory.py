# cardsync/routes/inventory.py
"""
Admin-side inventory changes. Each one commits the local change together with
the outbound work it schedules.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from cardsync.core.exceptions import InvalidInventoryOperation, InventoryItemNotFoundError
from cardsync.core.security import get_current_username
from cardsync.dependencies import get_db
from cardsync.schemas.inventory import (
    InventoryItemCreate,
    InventoryItemRead,
    InventoryItemUpdate,
    LocalSaleCreate,
    TransferRequest,
)
from cardsync.services.inventory_service import InventoryService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/inventory", tags=["inventory"])


def _service(db: AsyncSession = Depends(get_db), username: str = Depends(get_current_username)) -> InventoryService:
    return InventoryService(db, user=username)


async def _commit(service: InventoryService, operation):
    try:
        item = await operation
    except InventoryItemNotFoundError as e:
        await service.db.rollback()
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidInventoryOperation as e:
        await service.db.rollback()
        raise HTTPException(status_code=400, detail=str(e))
    await service.db.commit()
    return item


@router.get("/items", response_model=List[InventoryItemRead])
async def list_items(
    store_key: Optional[str] = None,
    sync_status: Optional[str] = None,
    include_deleted: bool = False,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    service: InventoryService = Depends(_service),
):
    return await service.list_items(store_key, sync_status, include_deleted, limit, offset)


@router.get("/items/{item_id}", response_model=InventoryItemRead)
async def get_item(item_id: int, service: InventoryService = Depends(_service)):
    try:
        return await service.get_item(item_id)
    except InventoryItemNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/items", response_model=InventoryItemRead, status_code=201)
async def create_item(data: InventoryItemCreate, service: InventoryService = Depends(_service)):
    return await _commit(service, service.create_item(data))


@router.patch("/items/{item_id}", response_model=InventoryItemRead)
async def update_item(item_id: int, data: InventoryItemUpdate, service: InventoryService = Depends(_service)):
    return await _commit(service, service.update_item(item_id, data))


@router.delete("/items/{item_id}", response_model=InventoryItemRead)
async def remove_item(item_id: int, service: InventoryService = Depends(_service)):
    return await _commit(service, service.remove_item(item_id))


@router.post("/items/{item_id}/sales", response_model=InventoryItemRead)
async def record_local_sale(item_id: int, data: LocalSaleCreate, service: InventoryService = Depends(_service)):
    """Sale made off the storefront (in store, at a show)."""
    return await _commit(service, service.record_local_sale(item_id, data))


@router.post("/items/{item_id}/transfer", response_model=InventoryItemRead)
async def transfer_item(item_id: int, data: TransferRequest, service: InventoryService = Depends(_service)):
    return await _commit(service, service.transfer_item(item_id, data.location_gid))
