"""
Portfolio endpoints for the authenticated user
"""

from typing import Optional
from fastapi import APIRouter, Depends, Query

from .deps import get_current_user_id, get_system, page_limit
from .schemas import page_response
from ..system import StakingSystem


router = APIRouter()


@router.get("")
async def get_my_portfolio(
    user_id: str = Depends(get_current_user_id),
    system: StakingSystem = Depends(get_system)
):
    """Get the caller's portfolio"""
    portfolio = system.ledger.find_by_user(user_id)
    return {"portfolio": portfolio.to_dict()}


@router.get("/rate-history")
async def get_rate_history(
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    user_id: str = Depends(get_current_user_id),
    system: StakingSystem = Depends(get_system)
):
    """Rate changes applied to the caller's portfolio, newest first"""
    history = system.ledger.get_rate_history(user_id, page, page_limit(system, limit))
    return page_response(history, "rate_changes")


@router.get("/interest-history")
async def get_interest_history(
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    user_id: str = Depends(get_current_user_id),
    system: StakingSystem = Depends(get_system)
):
    """Daily interest credits for the caller, newest first"""
    history = system.interest_engine.get_interest_history(user_id, page, page_limit(system, limit))
    return page_response(history, "interest_history")
