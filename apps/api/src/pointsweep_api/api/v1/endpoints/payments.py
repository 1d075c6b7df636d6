"""Merchant settlement and bank transfer endpoints."""

from typing import Any

from fastapi import APIRouter, Depends, Query

from pointsweep_api.api.dependencies.security import require_admin_api_key
from pointsweep_api.api.dependencies.services import get_bank_transfer_service, get_payment_settlement
from pointsweep_api.schemas.payment import BankTransferView, MarkPaidRequest, TransferStatusRequest
from pointsweep_api.services.settlement.bank_transfers import BankTransferService
from pointsweep_api.services.settlement.payments import PaymentSettlement


router = APIRouter(prefix="/payments", tags=["payments"], dependencies=[Depends(require_admin_api_key)])


@router.post("/mark-paid", summary="Settle unpaid confirmed and executed orders of a merchant")
async def mark_paid(
    request: MarkPaidRequest,
    settlement: PaymentSettlement = Depends(get_payment_settlement),
) -> dict[str, Any]:
    result = await settlement.mark_paid(request.merchant_id, request.paid_batch_id)
    return {"success": True, **result.as_dict()}


@router.get("/payable", summary="Unpaid totals by merchant and broker")
async def payable(
    merchant_id: str | None = Query(default=None),
    settlement: PaymentSettlement = Depends(get_payment_settlement),
) -> dict[str, Any]:
    return {"success": True, **await settlement.payable_summary(merchant_id)}


@router.post("/{paid_batch_id}/transfer", summary="Submit the bank transfer for a paid batch")
async def initiate_transfer(
    paid_batch_id: str,
    service: BankTransferService = Depends(get_bank_transfer_service),
) -> dict[str, Any]:
    transfer = await service.initiate_transfer(paid_batch_id)
    return {"success": True, "transfer": BankTransferView.model_validate(transfer)}


@router.post("/transfers/{idempotency_key}/status", summary="Reconcile a status reported by the bank rail")
async def transfer_status(
    idempotency_key: str,
    request: TransferStatusRequest,
    service: BankTransferService = Depends(get_bank_transfer_service),
) -> dict[str, Any]:
    transfer, changed = await service.apply_transfer_status(
        idempotency_key,
        request.status,
        external_id=request.external_id,
        failure_reason=request.failure_reason,
    )
    return {"success": True, "changed": changed, "transfer": BankTransferView.model_validate(transfer)}
