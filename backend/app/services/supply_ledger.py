"""Supply ledger: the fixed set of mintable items per collection."""
from dataclasses import dataclass
from typing import Optional

import structlog
from sqlalchemy import select, update, func, and_, exists
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.collection import Collection, SupplyItem, LaunchStatus
from app.models.mint import MintAttempt, released_values
from app.services.actor import Actor
from app.services.errors import NotAdminError, NotFoundError, SupplyExhaustedError, SupplyLockedError

logger = structlog.get_logger()


async def lock_collection(db: AsyncSession, collection_id: int) -> None:
    """
    Serialize claim-affecting work on a collection.

    Must be the first statement of the transaction. On PostgreSQL the UPDATE
    holds the collection row lock until commit, on SQLite it takes the
    database write lock. Counts read after this call cannot be raced.
    """
    result = await db.execute(
        update(Collection)
        .where(Collection.id == collection_id)
        .values(claim_version=Collection.claim_version + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise NotFoundError(f"Collection {collection_id} not found")


def live_holder_exists():
    """Correlated EXISTS: a live, non-test attempt holds the supply item"""
    return exists().where(
        and_(
            MintAttempt.supply_item_id == SupplyItem.id,
            MintAttempt.is_test_mint == False,  # noqa: E712
            MintAttempt.status.notin_(released_values()),
        )
    )


@dataclass
class SupplyCounts:
    """Supply counters recomputed from supply item rows"""
    total: int
    max_supply: int
    minted: int
    held: int  # reserved by live attempts, not yet minted

    @property
    def available(self) -> int:
        return max(0, self.max_supply - self.minted - self.held)

    @property
    def sold_out(self) -> bool:
        return self.max_supply > 0 and self.minted >= self.max_supply

    def to_dict(self) -> dict:
        return {
            "total_supply": self.total,
            "max_supply": self.max_supply,
            "minted": self.minted,
            "reserved": self.held,
            "available": self.available,
            "sold_out": self.sold_out,
        }


class SupplyLedger:
    """Reads and mutations of supply items"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_collection(self, collection_id: int) -> Collection:
        collection = await self.db.get(Collection, collection_id, populate_existing=True)
        if collection is None:
            raise NotFoundError(f"Collection {collection_id} not found")
        return collection

    async def minted_count(self, collection_id: int) -> int:
        result = await self.db.execute(
            select(func.count(SupplyItem.id)).where(
                SupplyItem.collection_id == collection_id,
                SupplyItem.is_minted == True,  # noqa: E712
            )
        )
        return result.scalar_one()

    async def counts(self, collection_id: int) -> SupplyCounts:
        collection = await self.get_collection(collection_id)
        total = (await self.db.execute(
            select(func.count(SupplyItem.id)).where(SupplyItem.collection_id == collection_id)
        )).scalar_one()
        minted = await self.minted_count(collection_id)
        held = (await self.db.execute(
            select(func.count(SupplyItem.id)).where(
                SupplyItem.collection_id == collection_id,
                SupplyItem.is_minted == False,  # noqa: E712
                live_holder_exists(),
            )
        )).scalar_one()
        return SupplyCounts(total=total, max_supply=collection.max_supply, minted=minted, held=held)

    async def select_available(self, collection_id: int, supply_item_id: Optional[int] = None) -> SupplyItem:
        """
        Pick an item that is neither minted nor held by a live attempt.

        Caller must hold the collection lock. With `supply_item_id` the wallet
        picked a specific item, otherwise one is chosen at random.
        """
        counts = await self.counts(collection_id)
        if counts.available <= 0:
            raise SupplyExhaustedError(f"Collection {collection_id} has no remaining supply")

        query = select(SupplyItem).where(
            SupplyItem.collection_id == collection_id,
            SupplyItem.is_minted == False,  # noqa: E712
            ~live_holder_exists(),
        )
        if supply_item_id is not None:
            query = query.where(SupplyItem.id == supply_item_id)
        else:
            query = query.order_by(func.random())

        item = (await self.db.execute(query.limit(1))).scalar_one_or_none()
        if item is None:
            if supply_item_id is not None:
                raise SupplyExhaustedError(f"Supply item {supply_item_id} is not available")
            raise SupplyExhaustedError(f"Collection {collection_id} has no remaining supply")
        return item

    async def generate(self, actor: Actor, collection_id: int, count: int) -> int:
        """
        Append `count` items to a collection's supply.

        Only allowed before minting begins: once the collection is locked
        (first phase activation) or any attempt exists, total_supply is fixed.
        """
        if not actor.is_admin:
            raise NotAdminError("Only admins can generate supply")
        if count <= 0:
            raise ValueError("count must be positive")

        await lock_collection(self.db, collection_id)
        collection = await self.get_collection(collection_id)
        if collection.is_locked or collection.launch_status in (
            LaunchStatus.ACTIVE.value, LaunchStatus.PAUSED.value, LaunchStatus.COMPLETED.value,
        ):
            raise SupplyLockedError(f"Supply of collection {collection_id} is locked")
        has_attempts = (await self.db.execute(
            select(func.count(MintAttempt.id)).where(
                MintAttempt.collection_id == collection_id,
                MintAttempt.is_test_mint == False,  # noqa: E712
            )
        )).scalar_one()
        if has_attempts:
            raise SupplyLockedError(f"Collection {collection_id} already has mint attempts")

        last_number = (await self.db.execute(
            select(func.max(SupplyItem.item_number)).where(SupplyItem.collection_id == collection_id)
        )).scalar_one() or 0
        self.db.add_all([
            SupplyItem(collection_id=collection_id, item_number=last_number + i + 1)
            for i in range(count)
        ])
        await self.db.flush()

        collection.total_supply = (await self.db.execute(
            select(func.count(SupplyItem.id)).where(SupplyItem.collection_id == collection_id)
        )).scalar_one()
        await self.db.flush()

        logger.info(
            "Generated supply",
            collection_id=collection_id,
            added=count,
            total_supply=collection.total_supply,
            actor=actor.wallet_address,
        )
        return collection.total_supply
