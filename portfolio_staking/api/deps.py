"""
Request dependencies

Authentication is handled upstream; the gateway forwards the authenticated
user in ``X-User-Id`` and, for admin routes, the admin in ``X-Admin-Id``.
"""

from typing import Optional

from fastapi import Header, HTTPException, Request

from ..system import StakingSystem


def get_system(request: Request) -> StakingSystem:
    return request.app.state.system


def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id


def get_admin_id(x_admin_id: Optional[str] = Header(None)) -> str:
    if not x_admin_id:
        raise HTTPException(status_code=401, detail="Missing X-Admin-Id header")
    return x_admin_id


def page_limit(system: StakingSystem, limit: Optional[int]) -> int:
    """Apply the configured default and cap to a requested page size"""
    if not limit:
        return system.config.default_page_size
    return min(limit, system.config.max_page_size)
