"""
Public wallet endpoints
"""

from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, Query

from .deps import get_system, page_limit
from .schemas import page_response
from ..errors import NotFoundError
from ..system import StakingSystem
from ..wallets import Wallet


router = APIRouter()


def serialize_wallet(system: StakingSystem, wallet: Wallet) -> Dict[str, Any]:
    data = wallet.to_dict()
    data["qr_image_url"] = system.object_store.generate_presigned_url(
        wallet.qr_image_key, system.config.presigned_url_expiry_seconds
    )
    return data


@router.get("")
async def list_active_wallets(
    chain: Optional[str] = Query(None),
    token: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    system: StakingSystem = Depends(get_system)
):
    """Active deposit wallets, highest priority first"""
    wallets = system.wallet_registry.list_wallets(
        chain=chain, token=token, is_active=True,
        page=page, limit=page_limit(system, limit)
    )
    return page_response(wallets, "wallets", lambda w: serialize_wallet(system, w))


@router.get("/chains")
async def list_available_chains(system: StakingSystem = Depends(get_system)):
    """Chains that currently have active wallets"""
    return {"chains": system.wallet_registry.available_chains()}


@router.get("/tokens")
async def list_available_tokens(
    chain: Optional[str] = Query(None),
    system: StakingSystem = Depends(get_system)
):
    """Tokens that currently have active wallets, optionally on one chain"""
    tokens = system.wallet_registry.available_tokens(chain=chain)
    for token in tokens:
        token["average_network_fee"] = str(token["average_network_fee"])
    return {"tokens": tokens}


@router.get("/{wallet_id}")
async def get_active_wallet(
    wallet_id: str,
    system: StakingSystem = Depends(get_system)
):
    """Get an active deposit wallet"""
    wallet = system.wallet_registry.get_wallet(wallet_id)
    if not wallet.is_active:
        raise NotFoundError(f"Wallet {wallet_id} not found")
    return {"wallet": serialize_wallet(system, wallet)}
