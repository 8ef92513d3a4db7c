"""Escrow intent endpoints: create, transitions and reads"""

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from models import EscrowTxKind
from services.escrow_coordinator import EscrowCoordinator, get_escrow_coordinator
from utils.auth import Principal, get_current_principal

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/escrows", tags=["escrows"])


class CreateEscrowRequest(BaseModel):
    order_id: str = Field(..., min_length=1, max_length=64)


@router.post("")
async def create_escrow(
    body: CreateEscrowRequest,
    principal: Principal = Depends(get_current_principal),
    coordinator: EscrowCoordinator = Depends(get_escrow_coordinator),
):
    return await coordinator.create_escrow(body.order_id, principal)


@router.get("/{order_id}")
async def get_escrow(
    order_id: str,
    principal: Principal = Depends(get_current_principal),
    coordinator: EscrowCoordinator = Depends(get_escrow_coordinator),
):
    return await coordinator.get_escrow(order_id, principal)


@router.post("/{order_id}/confirm-delivery")
async def confirm_delivery(
    order_id: str,
    principal: Principal = Depends(get_current_principal),
    coordinator: EscrowCoordinator = Depends(get_escrow_coordinator),
):
    result = await coordinator.transition(order_id, principal, EscrowTxKind.CONFIRM_DELIVERY)
    return result.to_dict()


@router.post("/{order_id}/release")
async def release(
    order_id: str,
    principal: Principal = Depends(get_current_principal),
    coordinator: EscrowCoordinator = Depends(get_escrow_coordinator),
):
    result = await coordinator.transition(order_id, principal, EscrowTxKind.RELEASE)
    return result.to_dict()


@router.post("/{order_id}/dispute")
async def dispute(
    order_id: str,
    principal: Principal = Depends(get_current_principal),
    coordinator: EscrowCoordinator = Depends(get_escrow_coordinator),
):
    result = await coordinator.transition(order_id, principal, EscrowTxKind.DISPUTE)
    return result.to_dict()


@router.post("/{order_id}/claim-timeout")
async def claim_timeout(
    order_id: str,
    principal: Principal = Depends(get_current_principal),
    coordinator: EscrowCoordinator = Depends(get_escrow_coordinator),
):
    result = await coordinator.transition(order_id, principal, EscrowTxKind.TIMEOUT_CLAIM)
    return result.to_dict()
