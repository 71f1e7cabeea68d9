from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from appbuilder.services import Services, get_services
from appbuilder.usage.reconciler import output_estimate


router = APIRouter(prefix="/api/credits", tags=["credits"])


class EstimateRequest(BaseModel):
    prompt: str


class TopUpRequest(BaseModel):
    amount: int = Field(..., gt=0)


@router.post("/estimate")
async def estimate_prompt(request: EstimateRequest, services: Services = Depends(get_services)) -> dict[str, Any]:
    return {
        "estimate": services.reconciler.estimate(request.prompt),
        "output_estimate": output_estimate(request.prompt),
    }


@router.get("/{user_id}")
async def get_balance(user_id: str, services: Services = Depends(get_services)) -> dict[str, Any]:
    balance = await services.reconciler.balance(user_id)
    entries = await services.reconciler.ledger.entries(user_id)
    return {
        "user_id": user_id,
        "balance": balance,
        "entries": [e.model_dump() for e in entries],
    }


@router.post("/{user_id}/top-up")
async def top_up(user_id: str, request: TopUpRequest, services: Services = Depends(get_services)) -> dict[str, Any]:
    balance = await services.reconciler.top_up(user_id, request.amount)
    return {"ok": True, "user_id": user_id, "balance": balance}
