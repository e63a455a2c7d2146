"""
Admin endpoints (interest rates, accrual runs, settlement, wallets)
"""

from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends, File, Query, UploadFile, status

from .deps import get_admin_id, get_system, page_limit
from .schemas import (
    ApplyInterestRequest, CreateWalletRequest, PortfolioStatusRequest,
    RejectTransactionRequest, RunAccrualRequest, UpdateWalletRequest, page_response
)
from .transactions import parse_status, parse_type, serialize_transaction
from .wallets import serialize_wallet
from ..collaborators import validate_image
from ..errors import ValidationError
from ..portfolio import PortfolioStatus
from ..system import StakingSystem


router = APIRouter()


# Portfolios

@router.post("/interest")
async def apply_interest(
    request: ApplyInterestRequest,
    admin_id: str = Depends(get_admin_id),
    system: StakingSystem = Depends(get_system)
):
    """Apply a monthly interest rate and duration to a user's portfolio"""
    portfolio, rate_change = system.ledger.apply_rate(
        user_id=request.user_id,
        new_rate=request.interest_rate,
        new_duration=request.duration,
        changed_by=admin_id
    )
    return {
        "portfolio": portfolio.to_dict(),
        "rate_change": rate_change.to_dict(),
        "message": "Interest rate applied successfully"
    }


@router.get("/portfolios/{user_id}")
async def get_user_portfolio(
    user_id: str,
    admin_id: str = Depends(get_admin_id),
    system: StakingSystem = Depends(get_system)
):
    portfolio = system.ledger.find_by_user(user_id)
    return {"portfolio": portfolio.to_dict()}


@router.post("/portfolios/{user_id}", status_code=status.HTTP_201_CREATED)
async def open_portfolio(
    user_id: str,
    admin_id: str = Depends(get_admin_id),
    system: StakingSystem = Depends(get_system)
):
    """Create a user's portfolio (returns the existing one if present)"""
    portfolio = system.ledger.open_portfolio(user_id)
    return {"portfolio": portfolio.to_dict()}


@router.put("/portfolios/{user_id}/status")
async def set_portfolio_status(
    user_id: str,
    request: PortfolioStatusRequest,
    admin_id: str = Depends(get_admin_id),
    system: StakingSystem = Depends(get_system)
):
    try:
        new_status = PortfolioStatus(request.status)
    except ValueError:
        raise ValidationError(f"Invalid portfolio status {request.status!r}")
    portfolio = system.ledger.set_status(user_id, new_status, changed_by=admin_id)
    return {"portfolio": portfolio.to_dict()}


@router.post("/accrual/run")
async def run_accrual(
    request: Optional[RunAccrualRequest] = None,
    admin_id: str = Depends(get_admin_id),
    system: StakingSystem = Depends(get_system)
):
    """Run the daily interest accrual now (idempotent per day)"""
    accrual_date = None
    if request and request.accrual_date:
        try:
            accrual_date = date.fromisoformat(request.accrual_date)
        except ValueError:
            raise ValidationError(f"Invalid accrual date {request.accrual_date!r}")
    result = system.interest_engine.run_daily_accrual(accrual_date)
    return {"result": result.to_dict()}


# Settlement

@router.get("/transactions")
async def list_transactions(
    user_id: Optional[str] = Query(None),
    status_filter: Optional[str] = Query(None, alias="status"),
    transaction_type: Optional[str] = Query(None, alias="type"),
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    admin_id: str = Depends(get_admin_id),
    system: StakingSystem = Depends(get_system)
):
    transactions = system.settlement.list_transactions(
        user_id=user_id,
        status=parse_status(status_filter),
        transaction_type=parse_type(transaction_type),
        page=page,
        limit=page_limit(system, limit)
    )
    return page_response(transactions, "transactions", lambda t: serialize_transaction(system, t))


@router.post("/transactions/{transaction_id}/approve")
async def approve_transaction(
    transaction_id: str,
    admin_id: str = Depends(get_admin_id),
    system: StakingSystem = Depends(get_system)
):
    """Approve a pending transaction and settle it"""
    transaction = system.settlement.approve(transaction_id, reviewed_by=admin_id)
    portfolio = system.ledger.find_by_user(transaction.user_id)
    return {
        "transaction": serialize_transaction(system, transaction),
        "portfolio": portfolio.to_dict(),
        "message": "Transaction approved"
    }


@router.post("/transactions/{transaction_id}/reject")
async def reject_transaction(
    transaction_id: str,
    request: Optional[RejectTransactionRequest] = None,
    admin_id: str = Depends(get_admin_id),
    system: StakingSystem = Depends(get_system)
):
    transaction = system.settlement.reject(
        transaction_id,
        reason=request.reason if request else None,
        reviewed_by=admin_id
    )
    return {
        "transaction": serialize_transaction(system, transaction),
        "message": "Transaction rejected"
    }


# Wallets

@router.post("/wallets/qr", status_code=status.HTTP_201_CREATED)
async def upload_wallet_qr(
    file: UploadFile = File(..., description="Wallet QR image (JPEG, PNG or WebP)"),
    admin_id: str = Depends(get_admin_id),
    system: StakingSystem = Depends(get_system)
):
    content = await file.read()
    content_type = file.content_type or ""
    validate_image(content, content_type)
    key = system.object_store.generate_file_key(file.filename or "", "wallet-qr", admin_id)
    system.object_store.upload_file(content, key, content_type)
    return {"qr_image_key": key}


@router.post("/wallets", status_code=status.HTTP_201_CREATED)
async def create_wallet(
    request: CreateWalletRequest,
    admin_id: str = Depends(get_admin_id),
    system: StakingSystem = Depends(get_system)
):
    wallet = system.wallet_registry.create_wallet(created_by=admin_id, **request.model_dump())
    return {"wallet": serialize_wallet(system, wallet), "message": "Wallet created successfully"}


@router.get("/wallets")
async def list_wallets(
    chain: Optional[str] = Query(None),
    token: Optional[str] = Query(None),
    is_active: Optional[bool] = Query(None),
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    admin_id: str = Depends(get_admin_id),
    system: StakingSystem = Depends(get_system)
):
    wallets = system.wallet_registry.list_wallets(
        chain=chain, token=token, is_active=is_active,
        page=page, limit=page_limit(system, limit)
    )
    return page_response(wallets, "wallets", lambda w: serialize_wallet(system, w))


@router.put("/wallets/{wallet_id}")
async def update_wallet(
    wallet_id: str,
    request: UpdateWalletRequest,
    admin_id: str = Depends(get_admin_id),
    system: StakingSystem = Depends(get_system)
):
    wallet = system.wallet_registry.update_wallet(
        wallet_id, admin_id, **request.model_dump(exclude_none=True)
    )
    return {"wallet": serialize_wallet(system, wallet)}


@router.post("/wallets/{wallet_id}/activate")
async def activate_wallet(
    wallet_id: str,
    admin_id: str = Depends(get_admin_id),
    system: StakingSystem = Depends(get_system)
):
    wallet = system.wallet_registry.activate(wallet_id, admin_id)
    return {"wallet": serialize_wallet(system, wallet)}


@router.post("/wallets/{wallet_id}/deactivate")
async def deactivate_wallet(
    wallet_id: str,
    admin_id: str = Depends(get_admin_id),
    system: StakingSystem = Depends(get_system)
):
    wallet = system.wallet_registry.deactivate(wallet_id, admin_id)
    return {"wallet": serialize_wallet(system, wallet)}


@router.delete("/wallets/{wallet_id}")
async def delete_wallet(
    wallet_id: str,
    admin_id: str = Depends(get_admin_id),
    system: StakingSystem = Depends(get_system)
):
    """Hard-delete a wallet and its QR image"""
    wallet = system.wallet_registry.delete_wallet(wallet_id, admin_id)
    system.object_store.delete_file(wallet.qr_image_key)
    return {"message": "Wallet deleted successfully"}


# Audit

@router.get("/audit/verify")
async def verify_audit_trail(
    admin_id: str = Depends(get_admin_id),
    system: StakingSystem = Depends(get_system)
):
    """Verify the audit hash chain"""
    return system.audit_trail.verify_integrity()
