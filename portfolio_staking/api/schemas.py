"""
Pydantic schemas for API requests and responses
"""

from typing import Any, Callable, Dict, List, Optional
from pydantic import BaseModel, Field

from ..amounts import Page
from ..storage import StorageRecord


# Admin schemas
class ApplyInterestRequest(BaseModel):
    user_id: str
    interest_rate: str = Field(..., description="Monthly rate in percent, Decimal as string")
    duration: int = Field(..., description="Accrual duration in days")


class PortfolioStatusRequest(BaseModel):
    status: str = Field(..., description="Portfolio status (active, paused)")


class RunAccrualRequest(BaseModel):
    accrual_date: Optional[str] = None  # ISO date string, defaults to today


class RejectTransactionRequest(BaseModel):
    reason: Optional[str] = None


# Transaction schemas
class DepositRequest(BaseModel):
    wallet_id: str
    amount: str = Field(..., description="Decimal amount as string")
    transaction_hash: str
    screenshot_key: str


class WithdrawalRequest(BaseModel):
    wallet_id: str
    amount: str = Field(..., description="Decimal amount as string")
    withdrawal_type: str = Field(..., description="principal or interest")
    withdrawal_address: str


# Wallet schemas
class CreateWalletRequest(BaseModel):
    wallet_address: str
    chain: str
    token: str
    qr_image_key: str
    description: Optional[str] = None
    network_fee: Optional[str] = None
    minimum_amount: str = "0"
    maximum_amount: str = "0"  # 0/0 means no limit
    priority: int = 0
    tags: List[str] = Field(default_factory=list)


class UpdateWalletRequest(BaseModel):
    wallet_address: Optional[str] = None
    chain: Optional[str] = None
    token: Optional[str] = None
    qr_image_key: Optional[str] = None
    description: Optional[str] = None
    network_fee: Optional[str] = None
    minimum_amount: Optional[str] = None
    maximum_amount: Optional[str] = None
    priority: Optional[int] = None
    tags: Optional[List[str]] = None


def page_response(
    page: Page,
    key: str,
    serialize: Callable[[StorageRecord], Dict[str, Any]] = lambda record: record.to_dict()
) -> Dict[str, Any]:
    """Envelope for paginated listings"""
    return {
        key: [serialize(item) for item in page.items],
        "pagination": {
            "total": page.total,
            "page": page.page,
            "limit": page.limit,
            "total_pages": page.total_pages
        }
    }
