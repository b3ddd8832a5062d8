"""Bitcoin chain status lookups against a mempool.space compatible API"""
from dataclasses import dataclass
from typing import Optional

import httpx
import structlog

from app.config import get_settings

logger = structlog.get_logger()
settings = get_settings()


@dataclass
class TxStatus:
    """Chain view of a single transaction"""
    txid: str
    exists: bool
    confirmed: bool = False
    confirmations: int = 0
    block_height: Optional[int] = None
    fee_rate: Optional[float] = None  # sat/vB

    @classmethod
    def not_found(cls, txid: str) -> "TxStatus":
        return cls(txid=txid, exists=False)


class MempoolClient:
    """
    Async client for the mempool.space REST API.

    Every call is bounded by the configured timeout. Lookups return None on
    network errors or unexpected responses so callers can treat the result
    as unknown and try again later; a 404 is a definite "not found".
    """

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        self.base_url = (base_url or settings.mempool_api_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.chain_api_timeout_seconds
        self._client: Optional[httpx.AsyncClient] = None

    async def connect(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
            logger.info("Connected to mempool API", url=self.base_url)

    async def disconnect(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Mempool client not connected. Call connect() first.")
        return self._client

    async def _get(self, path: str) -> Optional[httpx.Response]:
        try:
            return await self.client.get(path)
        except httpx.HTTPError as e:
            logger.warning("Mempool request failed", path=path, error=str(e))
            return None

    async def get_tip_height(self) -> Optional[int]:
        response = await self._get("/blocks/tip/height")
        if response is None or response.status_code != 200:
            return None
        try:
            return int(response.text.strip())
        except ValueError:
            logger.warning("Unexpected tip height response", body=response.text[:100])
            return None

    async def get_recommended_fee_rate(self) -> Optional[float]:
        """Fastest recommended fee rate in sat/vB"""
        response = await self._get("/v1/fees/recommended")
        if response is None or response.status_code != 200:
            return None
        try:
            fees = response.json()
        except ValueError:
            return None
        rate = fees.get("fastestFee") or fees.get("halfHourFee")
        return float(rate) if rate is not None else None

    async def check_transaction(self, txid: str) -> Optional[TxStatus]:
        """Look up a transaction. Returns None when the chain could not be asked."""
        response = await self._get(f"/tx/{txid}")
        if response is None:
            return None
        if response.status_code == 404:
            return TxStatus.not_found(txid)
        if response.status_code != 200:
            logger.warning("Mempool tx lookup returned error", txid=txid, status_code=response.status_code)
            return None

        try:
            tx = response.json()
        except ValueError:
            logger.warning("Mempool tx lookup returned invalid JSON", txid=txid)
            return None

        status = tx.get("status") or {}
        confirmed = bool(status.get("confirmed"))
        block_height = status.get("block_height")

        fee_rate = None
        fee, weight = tx.get("fee"), tx.get("weight")
        if fee is not None and weight:
            fee_rate = round(fee / (weight / 4), 2)

        # A confirmed tx has at least one confirmation even if the tip lookup fails
        confirmations = 1 if confirmed else 0
        if confirmed and block_height is not None:
            tip = await self.get_tip_height()
            if tip is not None:
                confirmations = max(1, tip - block_height + 1)

        return TxStatus(
            txid=txid,
            exists=True,
            confirmed=confirmed,
            confirmations=confirmations,
            block_height=block_height,
            fee_rate=fee_rate,
        )


# Singleton instance
_chain_client: Optional[MempoolClient] = None


async def get_chain_client() -> MempoolClient:
    """Get or create the shared chain client"""
    global _chain_client
    if _chain_client is None:
        _chain_client = MempoolClient()
        await _chain_client.connect()
    return _chain_client


async def close_chain_client() -> None:
    global _chain_client
    if _chain_client is not None:
        await _chain_client.disconnect()
        _chain_client = None
