from typing import Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from models.trade import TradeHistoryView
from services.endpoint_rotation import endpoint_rotation
from services.trade_history_sync import trade_history_service
from utils.logger import api_logger as logger

router = APIRouter()


class ConnectRequest(BaseModel):
    proposal_id: Optional[str] = Field(
        default=None,
        description="Only show trades for this proposal (falls back to the config's proposalId)",
    )
    config: Optional[dict] = Field(
        default=None,
        description="Market config; token symbols it names are used before any RPC lookup",
    )


def _serialize_view(view: TradeHistoryView) -> dict:
    payload = view.model_dump(mode="json", by_alias=True)
    for trade, model in zip(payload["trades"], view.trades):
        trade["price_display"] = model.price_display
    payload["count"] = len(view.trades)
    return payload


def _bad_address(e: ValueError) -> HTTPException:
    return HTTPException(status_code=400, detail=str(e))


@router.get("/trade-history/status/endpoints")
async def get_endpoint_status():
    """RPC endpoint rotation state plus fetch cache / symbol cache stats."""
    return {
        "rotation": endpoint_rotation.get_status(),
        **trade_history_service.get_status(),
    }


@router.get("/trade-history/{address}")
async def get_trade_history(address: str, proposal_id: Optional[str] = Query(default=None)):
    """Trade history for a wallet; connects the wallet on first request."""
    try:
        view = await trade_history_service.connect(address, proposal_id=proposal_id)
    except ValueError as e:
        raise _bad_address(e)
    return _serialize_view(view)


@router.post("/trade-history/{address}")
async def connect_trade_history(address: str, request: ConnectRequest):
    """Connect a wallet with an explicit market config."""
    try:
        view = await trade_history_service.connect(
            address, config=request.config, proposal_id=request.proposal_id
        )
    except ValueError as e:
        raise _bad_address(e)
    return _serialize_view(view)


@router.post("/trade-history/{address}/refresh")
async def refresh_trade_history(address: str):
    try:
        view = await trade_history_service.refresh(address)
    except ValueError as e:
        raise _bad_address(e)
    logger.info("Manual trade history refresh", address=view.address, trades=len(view.trades))
    return _serialize_view(view)


@router.delete("/trade-history/{address}")
async def disconnect_trade_history(address: str):
    try:
        disconnected = await trade_history_service.disconnect(address)
    except ValueError as e:
        raise _bad_address(e)
    if not disconnected:
        raise HTTPException(status_code=404, detail="Wallet is not connected")
    return {"status": "disconnected", "address": address.strip().lower()}
