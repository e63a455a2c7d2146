"""
Deposit and withdrawal endpoints for the authenticated user
"""

from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, File, Form, Query, UploadFile, status

from .deps import get_current_user_id, get_system, page_limit
from .schemas import DepositRequest, WithdrawalRequest, page_response
from ..errors import NotFoundError, ValidationError
from ..system import StakingSystem
from ..transactions import Transaction, TransactionStatus, TransactionType


router = APIRouter()


def serialize_transaction(system: StakingSystem, transaction: Transaction) -> Dict[str, Any]:
    """Transaction as JSON, with a presigned screenshot URL for deposits"""
    data = transaction.to_dict()
    data["screenshot_url"] = system.settlement.get_screenshot_url(
        transaction, system.config.presigned_url_expiry_seconds
    )
    return data


def parse_status(value: Optional[str]) -> Optional[TransactionStatus]:
    if value is None:
        return None
    try:
        return TransactionStatus(value)
    except ValueError:
        raise ValidationError(f"Invalid transaction status {value!r}")


def parse_type(value: Optional[str]) -> Optional[TransactionType]:
    if value is None:
        return None
    try:
        return TransactionType(value)
    except ValueError:
        raise ValidationError(f"Invalid transaction type {value!r}")


@router.post("/screenshot", status_code=status.HTTP_201_CREATED)
async def upload_screenshot(
    transaction_hash: str = Form(...),
    file: UploadFile = File(..., description="Transfer screenshot (JPEG, PNG or WebP)"),
    user_id: str = Depends(get_current_user_id),
    system: StakingSystem = Depends(get_system)
):
    """Upload a deposit screenshot; submit the returned key with the deposit"""
    content = await file.read()
    key = system.settlement.upload_screenshot(
        user_id=user_id,
        transaction_hash=transaction_hash,
        filename=file.filename or "",
        content=content,
        content_type=file.content_type or ""
    )
    return {"screenshot_key": key}


@router.post("/deposit", status_code=status.HTTP_201_CREATED)
async def submit_deposit(
    request: DepositRequest,
    user_id: str = Depends(get_current_user_id),
    system: StakingSystem = Depends(get_system)
):
    """Submit a deposit for admin review"""
    transaction = system.settlement.submit_deposit(
        user_id=user_id,
        wallet_id=request.wallet_id,
        amount=request.amount,
        transaction_hash=request.transaction_hash,
        screenshot_key=request.screenshot_key
    )
    return {
        "transaction": serialize_transaction(system, transaction),
        "message": "Deposit submitted for review"
    }


@router.post("/withdrawal", status_code=status.HTTP_201_CREATED)
async def submit_withdrawal(
    request: WithdrawalRequest,
    user_id: str = Depends(get_current_user_id),
    system: StakingSystem = Depends(get_system)
):
    """Submit a withdrawal for admin review"""
    transaction = system.settlement.submit_withdrawal(
        user_id=user_id,
        wallet_id=request.wallet_id,
        amount=request.amount,
        withdrawal_type=request.withdrawal_type,
        withdrawal_address=request.withdrawal_address
    )
    return {
        "transaction": serialize_transaction(system, transaction),
        "message": "Withdrawal submitted for review"
    }


@router.get("")
async def list_my_transactions(
    status_filter: Optional[str] = Query(None, alias="status"),
    transaction_type: Optional[str] = Query(None, alias="type"),
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    user_id: str = Depends(get_current_user_id),
    system: StakingSystem = Depends(get_system)
):
    """The caller's transactions, newest first"""
    transactions = system.settlement.list_transactions(
        user_id=user_id,
        status=parse_status(status_filter),
        transaction_type=parse_type(transaction_type),
        page=page,
        limit=page_limit(system, limit)
    )
    return page_response(transactions, "transactions", lambda t: serialize_transaction(system, t))


@router.get("/{transaction_id}")
async def get_my_transaction(
    transaction_id: str,
    user_id: str = Depends(get_current_user_id),
    system: StakingSystem = Depends(get_system)
):
    """Get one of the caller's transactions"""
    transaction = system.settlement.get_transaction(transaction_id)
    if transaction.user_id != user_id:
        raise NotFoundError(f"Transaction {transaction_id} not found")
    return {"transaction": serialize_transaction(system, transaction)}
