"""
Payout endpoints
Balance, bank details, claims, burn history and payout administration
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from models import BankAccountKind
from services.bank_detail_service import BankDetailService, get_bank_detail_service
from services.burn_ledger import BurnLedger, get_burn_ledger
from services.payout_pipeline import PayoutPipeline, get_payout_pipeline
from utils.auth import Principal, get_current_principal, require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payouts", tags=["payouts"])


class BankDetailRequest(BaseModel):
    holder_name: str = Field(..., min_length=1, max_length=200)
    account_number: str = Field(..., min_length=1, max_length=34)
    routing_code: str = Field(..., min_length=1, max_length=11)
    bank_name: str = Field(..., min_length=1, max_length=100)
    kind: str = BankAccountKind.SAVINGS.value
    is_default: bool = False


class ClaimRequest(BaseModel):
    amount_usd: Decimal
    bank_detail_id: str


class MarkCompleteRequest(BaseModel):
    utr: Optional[str] = Field(None, max_length=64)
    notes: Optional[str] = Field(None, max_length=2000)


# ----------------------------------------------------------------------
# User
# ----------------------------------------------------------------------

@router.get("/balance")
async def get_balance(
    principal: Principal = Depends(get_current_principal),
    ledger: BurnLedger = Depends(get_burn_ledger),
):
    return await ledger.get_balance(principal.user_id)


@router.get("/bank-details")
async def list_bank_details(
    principal: Principal = Depends(get_current_principal),
    service: BankDetailService = Depends(get_bank_detail_service),
):
    return {"bank_details": await service.list_bank_details(principal.user_id)}


@router.post("/bank-details", status_code=201)
async def add_bank_detail(
    body: BankDetailRequest,
    principal: Principal = Depends(get_current_principal),
    service: BankDetailService = Depends(get_bank_detail_service),
):
    detail = await service.add_bank_detail(
        principal.user_id,
        body.holder_name,
        body.account_number,
        body.routing_code,
        body.bank_name,
        kind=body.kind,
        is_default=body.is_default,
    )
    return {"message": "Bank details added successfully", "bank_detail": detail}


@router.post("/bank-details/{bank_detail_id}/default")
async def set_default_bank_detail(
    bank_detail_id: str,
    principal: Principal = Depends(get_current_principal),
    service: BankDetailService = Depends(get_bank_detail_service),
):
    return {"bank_detail": await service.set_default_bank_detail(principal.user_id, bank_detail_id)}


@router.delete("/bank-details/{bank_detail_id}")
async def delete_bank_detail(
    bank_detail_id: str,
    principal: Principal = Depends(get_current_principal),
    service: BankDetailService = Depends(get_bank_detail_service),
):
    return await service.delete_bank_detail(principal.user_id, bank_detail_id)


@router.post("/claim", status_code=201)
async def claim_payout(
    body: ClaimRequest,
    principal: Principal = Depends(get_current_principal),
    pipeline: PayoutPipeline = Depends(get_payout_pipeline),
):
    return await pipeline.claim_payout(principal.user_id, body.amount_usd, body.bank_detail_id)


@router.get("/claims")
async def list_claims(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    principal: Principal = Depends(get_current_principal),
    pipeline: PayoutPipeline = Depends(get_payout_pipeline),
):
    return await pipeline.list_payouts(user_id=principal.user_id, page=page, limit=limit)


@router.get("/claims/{payout_id}")
async def get_claim(
    payout_id: str,
    principal: Principal = Depends(get_current_principal),
    pipeline: PayoutPipeline = Depends(get_payout_pipeline),
):
    return await pipeline.get_payout(payout_id, user_id=None if principal.is_admin else principal.user_id)


@router.get("/burns")
async def list_burns(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    principal: Principal = Depends(get_current_principal),
    ledger: BurnLedger = Depends(get_burn_ledger),
):
    return await ledger.list_burns(principal.user_id, page=page, limit=limit)


@router.post("/burns/{burn_id}/retry", status_code=201)
async def retry_burn(
    burn_id: str,
    principal: Principal = Depends(get_current_principal),
    ledger: BurnLedger = Depends(get_burn_ledger),
):
    return {"burn": await ledger.retry_burn(principal.user_id, burn_id)}


@router.post("/burns/{burn_id}/verify")
async def verify_burn(
    burn_id: str,
    principal: Principal = Depends(get_current_principal),
    ledger: BurnLedger = Depends(get_burn_ledger),
):
    return {"burn": await ledger.verify_now(burn_id, principal.user_id, is_admin=principal.is_admin)}


# ----------------------------------------------------------------------
# Admin
# ----------------------------------------------------------------------

@router.get("/admin")
async def admin_list_payouts(
    status: Optional[str] = None,
    user_id: Optional[str] = None,
    created_from: Optional[datetime] = Query(None, alias="from"),
    created_to: Optional[datetime] = Query(None, alias="to"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    principal: Principal = Depends(require_admin),
    pipeline: PayoutPipeline = Depends(get_payout_pipeline),
):
    return await pipeline.list_payouts(
        user_id=user_id,
        status=status,
        created_from=created_from,
        created_to=created_to,
        page=page,
        limit=limit,
        include_stats=True,
    )


@router.post("/admin/{payout_id}/retry")
async def admin_retry_payout(
    payout_id: str,
    principal: Principal = Depends(require_admin),
    pipeline: PayoutPipeline = Depends(get_payout_pipeline),
):
    return {"payout": await pipeline.retry_payout(payout_id, principal.user_id)}


@router.post("/admin/{payout_id}/mark-complete")
async def admin_mark_complete(
    payout_id: str,
    body: MarkCompleteRequest,
    principal: Principal = Depends(require_admin),
    pipeline: PayoutPipeline = Depends(get_payout_pipeline),
):
    payout = await pipeline.mark_complete(payout_id, principal.user_id, utr=body.utr, notes=body.notes)
    return {"message": "Payout marked as completed", "payout": payout}


@router.post("/admin/{payout_id}/sync")
async def admin_sync_payout(
    payout_id: str,
    principal: Principal = Depends(require_admin),
    pipeline: PayoutPipeline = Depends(get_payout_pipeline),
):
    return {"payout": await pipeline.sync_payout_status(payout_id)}
