from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from clinicops.core.clock import Clock
from clinicops.database import get_db
from clinicops.dependencies import get_clock, get_current_actor
from clinicops.schemas.time_block_schemas import TimeBlockCreate, TimeBlockResponse, TimeBlockUpdate
from clinicops.services.block_registry import BlockRegistry, BlockRequest
from clinicops.services.permissions import Actor

router = APIRouter(prefix="/api/v1/time-blocks", tags=["time-blocks"])


def get_registry(db: Session = Depends(get_db), clock: Clock = Depends(get_clock)) -> BlockRegistry:
    return BlockRegistry(db, clock=clock)


@router.post("/", response_model=List[TimeBlockResponse], status_code=201)
def create_time_block(
    data: TimeBlockCreate,
    actor: Actor = Depends(get_current_actor),
    registry: BlockRegistry = Depends(get_registry),
):
    """Create a block; recurring requests return every generated occurrence."""
    return registry.create_block(BlockRequest(**data.model_dump()), actor)


@router.patch("/{block_id}", response_model=TimeBlockResponse)
def update_time_block(
    block_id: int,
    data: TimeBlockUpdate,
    actor: Actor = Depends(get_current_actor),
    registry: BlockRegistry = Depends(get_registry),
):
    return registry.update_block(block_id, data.model_dump(exclude_unset=True), actor)


@router.delete("/series/{recurrence_id}")
def delete_time_block_series(
    recurrence_id: str,
    actor: Actor = Depends(get_current_actor),
    registry: BlockRegistry = Depends(get_registry),
):
    removed = registry.delete_series(recurrence_id, actor)
    return {"success": True, "recurrence_id": recurrence_id, "removed": removed}


@router.delete("/{block_id}")
def delete_time_block(
    block_id: int,
    actor: Actor = Depends(get_current_actor),
    registry: BlockRegistry = Depends(get_registry),
):
    block = registry.delete_block(block_id, actor)
    return {"success": True, "id": block.id}


@router.get("/doctor/{doctor_id}", response_model=List[TimeBlockResponse])
def list_doctor_time_blocks(
    doctor_id: str,
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    actor: Actor = Depends(get_current_actor),
    registry: BlockRegistry = Depends(get_registry),
):
    return registry.blocks_for_doctor(doctor_id, start, end)
