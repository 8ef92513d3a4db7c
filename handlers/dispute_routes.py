"""Arbitrator dispute resolution"""

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from services.escrow_coordinator import EscrowCoordinator, get_escrow_coordinator
from utils.auth import Principal, require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/disputes", tags=["disputes"])


class ResolveDisputeRequest(BaseModel):
    winner: Literal["buyer", "seller"]
    notes: Optional[str] = Field(None, max_length=2000)


@router.post("/{order_id}/resolve")
async def resolve_dispute(
    order_id: str,
    body: ResolveDisputeRequest,
    principal: Principal = Depends(require_admin),
    coordinator: EscrowCoordinator = Depends(get_escrow_coordinator),
):
    logger.info(f"⚖️ DISPUTE_RESOLVE_REQUEST: order={order_id} winner={body.winner} by={principal.user_id}")
    result = await coordinator.resolve(order_id, principal, body.winner, body.notes)
    return result.to_dict()
