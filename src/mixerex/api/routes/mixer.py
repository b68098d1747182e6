"""Mixer order endpoints used by the web client."""

from datetime import datetime
from typing import Optional, Union

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from mixerex.ledger.models import MixerOrder
from mixerex.services.deposit_monitor import DepositResult
from mixerex.services.order_manager import OrderSummary
from mixerex.services.registry import MixerServices, get_services

router = APIRouter()


def get_mixer_services() -> MixerServices:
    """Dependency returning the process mixer services."""
    return get_services()


class CamelModel(BaseModel):
    """Model serialized with the camelCase keys the web client uses."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateOrderRequest(CamelModel):
    """Payload for creating a mixer order."""

    token_mint: str = Field(..., min_length=32, max_length=44, description="SPL token mint")
    amount: Union[int, str] = Field(..., description="Amount in base units")
    recipient_address: str = Field(..., min_length=32, max_length=44)
    sender_address: str = Field(..., min_length=32, max_length=44)
    session_id: Optional[str] = Field(None, max_length=255)
    wallet_address: Optional[str] = Field(None, max_length=44)

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: Union[int, str]) -> int:
        """Amounts are whole base units; decimals and floats are rejected."""
        if isinstance(v, bool):
            raise ValueError("Amount must be an integer number of base units")
        if isinstance(v, str):
            v = v.strip()
            if not v.isdigit():
                raise ValueError("Amount must be an integer number of base units")
            v = int(v)
        if v <= 0:
            raise ValueError("Amount must be positive")
        return v


class OrderResponse(CamelModel):
    """Public order view. Never includes key material."""

    order_id: str
    status: str
    token_mint: str
    amount: str
    sender_address: str
    recipient_address: str
    deposit_address: str
    expires_at: datetime
    created_at: Optional[datetime] = None
    deposited_amount: Optional[str] = None
    deposited_at: Optional[datetime] = None
    deposit_tx_signature: Optional[str] = None
    payout_scheduled_at: Optional[datetime] = None
    payout_executed_at: Optional[datetime] = None
    payout_tx_signature: Optional[str] = None
    completed_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None

    @classmethod
    def from_order(cls, order: MixerOrder) -> "OrderResponse":
        summary = OrderSummary.from_order(order).to_dict()
        summary["amount"] = str(summary["amount"])
        if summary["deposited_amount"] is not None:
            summary["deposited_amount"] = str(summary["deposited_amount"])
        return cls(**summary)


class DepositCheckResponse(CamelModel):
    """Deposit state polled by the client."""

    deposited: bool
    status: str
    amount: Optional[str] = None
    deposited_at: Optional[datetime] = None
    signature: Optional[str] = None
    payout_scheduled_at: Optional[datetime] = None
    payout_scheduled_in: Optional[int] = Field(None, description="Minutes until payout")

    @classmethod
    def from_result(cls, result: DepositResult) -> "DepositCheckResponse":
        return cls(
            deposited=result.deposited,
            status=result.status,
            amount=str(result.amount) if result.amount is not None else None,
            deposited_at=result.deposited_at,
            signature=result.signature,
            payout_scheduled_at=result.payout_eta,
            payout_scheduled_in=result.payout_scheduled_in_minutes,
        )


class CloseResponse(CamelModel):
    """Result of cancel / auto-close."""

    success: bool
    order_id: str
    status: str


@router.post("/order", response_model=OrderResponse, response_model_by_alias=True)
async def create_order(
    payload: CreateOrderRequest,
    services: MixerServices = Depends(get_mixer_services),
) -> OrderResponse:
    """Create an order and return its deposit address."""
    order = await services.orders.create_order(
        token_mint=payload.token_mint,
        amount=payload.amount,
        recipient_address=payload.recipient_address,
        sender_address=payload.sender_address,
        session_id=payload.session_id,
        wallet_address=payload.wallet_address,
    )
    return OrderResponse.from_order(order)


@router.get("/order/{order_id}", response_model=OrderResponse, response_model_by_alias=True)
async def get_order(
    order_id: str,
    services: MixerServices = Depends(get_mixer_services),
) -> OrderResponse:
    """Get an order by id."""
    return OrderResponse.from_order(await services.orders.get_order(order_id))


@router.get(
    "/check-deposit/{order_id}",
    response_model=DepositCheckResponse,
    response_model_by_alias=True,
)
async def check_deposit(
    order_id: str,
    services: MixerServices = Depends(get_mixer_services),
) -> DepositCheckResponse:
    """Check whether the deposit for an order has arrived."""
    result = await services.monitor.check_deposit(order_id)
    return DepositCheckResponse.from_result(result)


@router.post("/cancel/{order_id}", response_model=CloseResponse, response_model_by_alias=True)
async def cancel_order(
    order_id: str,
    services: MixerServices = Depends(get_mixer_services),
) -> CloseResponse:
    """Cancel an open order."""
    order = await services.orders.cancel_order(order_id)
    return CloseResponse(success=True, order_id=order.order_id, status=order.status)


@router.post(
    "/auto-close/{order_id}", response_model=CloseResponse, response_model_by_alias=True
)
async def auto_close(
    order_id: str,
    services: MixerServices = Depends(get_mixer_services),
) -> CloseResponse:
    """Close an order when the client's countdown ends."""
    order = await services.orders.auto_close(order_id)
    return CloseResponse(success=True, order_id=order.order_id, status=order.status)


@router.get("/active-order", response_model=Optional[OrderResponse], response_model_by_alias=True)
async def get_active_order(
    session_id: str = Query(..., min_length=1, max_length=255),
    services: MixerServices = Depends(get_mixer_services),
) -> Optional[OrderResponse]:
    """Most recent open order of a browser session, or null."""
    order = await services.orders.get_active_order_by_session(session_id)
    return OrderResponse.from_order(order) if order else None


@router.get("/orders", response_model=list[OrderResponse], response_model_by_alias=True)
async def list_orders(
    wallet_address: str = Query(..., min_length=32, max_length=44),
    services: MixerServices = Depends(get_mixer_services),
) -> list[OrderResponse]:
    """Order history of a wallet."""
    orders = await services.orders.list_orders_by_wallet(wallet_address)
    return [OrderResponse.from_order(order) for order in orders]
