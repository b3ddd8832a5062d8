"""Request-scoped dependencies: caller capability and the chain client"""
from typing import Optional

from fastapi import Depends, Header, HTTPException

from app.config import Settings, get_settings
from app.services.actor import Actor
from app.services.chain_client import MempoolClient, get_chain_client
from app.services.errors import NotAdminError


async def get_actor(
    x_wallet_address: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
) -> Optional[Actor]:
    """Resolve the caller once per request. Admin capability comes from settings.admin_wallets."""
    return Actor.resolve(x_wallet_address, settings.admin_wallets)


async def require_wallet(actor: Optional[Actor] = Depends(get_actor)) -> Actor:
    if actor is None:
        raise HTTPException(status_code=401, detail="X-Wallet-Address header is required")
    return actor


async def require_admin(actor: Actor = Depends(require_wallet)) -> Actor:
    if not actor.is_admin:
        raise NotAdminError("Admin capability required")
    return actor


async def get_chain() -> MempoolClient:
    return await get_chain_client()
