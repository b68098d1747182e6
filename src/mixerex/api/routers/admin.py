"""Admin API endpoints for payout operations (token-protected)."""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel

from mixerex.config import get_settings
from mixerex.ledger.models import MixerOrder
from mixerex.services.payouts import PayoutResult
from mixerex.services.registry import MixerServices, get_services

router = APIRouter(prefix="/admin/mixer", tags=["admin"])


async def require_admin_token(x_admin_token: str = Header(None)) -> bool:
    """Verify admin token from header.

    If ADMIN_TOKEN is not set, allows access outside production (dev mode).
    """
    settings = get_settings()

    if not settings.admin_token:
        if settings.is_production:
            raise HTTPException(status_code=503, detail="Admin token not configured")
        return True

    if x_admin_token != settings.admin_token:
        raise HTTPException(status_code=401, detail="Invalid admin token")

    return True


def get_admin_services() -> MixerServices:
    return get_services()


class PayoutState(BaseModel):
    """Operator view of an order's payout bookkeeping."""

    order_id: str
    status: str
    deposit_address: str
    recipient_address: str
    token_mint: str
    deposited_amount: Optional[str]
    payout_scheduled_at: Optional[datetime]
    payout_attempts: int
    payout_next_attempt_at: Optional[datetime]
    payout_submitted_signature: Optional[str]
    payout_tx_signature: Optional[str]
    payout_last_error: Optional[str]
    payout_failed_at: Optional[datetime]
    secret_discarded: bool

    @classmethod
    def from_order(cls, order: MixerOrder) -> "PayoutState":
        return cls(
            order_id=order.order_id,
            status=order.status,
            deposit_address=order.deposit_address,
            recipient_address=order.recipient_address,
            token_mint=order.token_mint,
            deposited_amount=(
                str(order.deposited_amount) if order.deposited_amount is not None else None
            ),
            payout_scheduled_at=order.payout_scheduled_at,
            payout_attempts=order.payout_attempts,
            payout_next_attempt_at=order.payout_next_attempt_at,
            payout_submitted_signature=order.payout_submitted_signature,
            payout_tx_signature=order.payout_tx_signature,
            payout_last_error=order.payout_last_error,
            payout_failed_at=order.payout_failed_at,
            secret_discarded=order.secret_discarded,
        )


class PayoutRun(BaseModel):
    """Result of an operator-triggered payout."""

    order_id: str
    success: bool
    status: str
    signature: Optional[str] = None
    error: Optional[str] = None
    skipped: bool = False
    attempts: int = 0
    needs_attention: bool = False

    @classmethod
    def from_result(cls, result: PayoutResult) -> "PayoutRun":
        return cls(**result.__dict__)


@router.get("/failed-payouts", response_model=list[PayoutState])
async def list_failed_payouts(
    _: bool = Depends(require_admin_token),
    services: MixerServices = Depends(get_admin_services),
) -> list[PayoutState]:
    """Payouts that gave up and wait for manual resolution."""
    orders = await services.executor.list_failed_payouts()
    return [PayoutState.from_order(order) for order in orders]


@router.get("/orders/{order_id}", response_model=PayoutState)
async def get_payout_state(
    order_id: str,
    _: bool = Depends(require_admin_token),
    services: MixerServices = Depends(get_admin_services),
) -> PayoutState:
    """Payout bookkeeping of a single order."""
    return PayoutState.from_order(await services.orders.get_order(order_id))


@router.post("/retry/{order_id}")
async def retry_failed_payout(
    order_id: str,
    _: bool = Depends(require_admin_token),
    services: MixerServices = Depends(get_admin_services),
) -> dict:
    """Return a flagged payout to automatic retries."""
    reset = await services.executor.retry_failed_payout(order_id)
    if not reset:
        raise HTTPException(status_code=409, detail="Payout is not flagged as failed")
    return {"success": True, "order_id": order_id}


@router.post("/execute/{order_id}", response_model=PayoutRun)
async def execute_payout(
    order_id: str,
    _: bool = Depends(require_admin_token),
    services: MixerServices = Depends(get_admin_services),
) -> PayoutRun:
    """Run a due payout now instead of waiting for the worker tick."""
    result = await services.executor.execute_payout(order_id)
    return PayoutRun.from_result(result)


@router.post("/purge")
async def purge_closed_orders(
    older_than_days: int = Query(30, ge=0, le=3650),
    _: bool = Depends(require_admin_token),
    services: MixerServices = Depends(get_admin_services),
) -> dict:
    """Delete closed orders past retention whose deposit key is already discarded."""
    purged = await services.orders.purge_closed_orders(older_than_days)
    return {"success": True, "purged": purged}
