"""Concurrent claims and commits against the same collection.

Each task uses its own session (its own connection), like concurrent
requests. The collection lock must serialize them so that no cap is ever
exceeded.
"""
import asyncio

import pytest
from sqlalchemy import func, select, update

from app.models.mint import MintAttempt
from app.models.phase import MintPhase
from app.services.actor import Actor
from app.services.errors import CapacityError
from app.services.mint_state import MintStateMachine

from conftest import WALLET_A

N = 3


async def _claim(session_factory, settings, wallet: str, collection_id: int) -> bool:
    async with session_factory() as db:
        try:
            await MintStateMachine(db, settings).claim(Actor.wallet(wallet), collection_id)
            await db.commit()
            return True
        except CapacityError:
            await db.rollback()
            return False


async def _commit(session_factory, settings, wallet: str, attempt_id: int) -> bool:
    async with session_factory() as db:
        try:
            await MintStateMachine(db, settings).record_commit_broadcast(
                Actor.wallet(wallet), attempt_id, f"{attempt_id:064x}"
            )
            await db.commit()
            return True
        except CapacityError:
            await db.rollback()
            return False


class TestConcurrentClaims:
    """Bursts of claims never exceed a cap"""

    @pytest.mark.asyncio
    async def test_wallet_cap_under_burst(self, session_factory, settings, make_launch):
        collection, _ = await make_launch(supply=20, max_per_wallet=N)

        results = await asyncio.gather(*[
            _claim(session_factory, settings, WALLET_A, collection.id) for _ in range(2 * N)
        ])

        assert sum(results) == N
        async with session_factory() as db:
            count = (await db.execute(
                select(func.count(MintAttempt.id)).where(MintAttempt.minter_wallet == WALLET_A)
            )).scalar_one()
        assert count == N

    @pytest.mark.asyncio
    async def test_supply_under_burst(self, session_factory, settings, make_launch):
        """2N different wallets race for N items: N win, each with a distinct item"""
        collection, _ = await make_launch(supply=N)

        results = await asyncio.gather(*[
            _claim(session_factory, settings, f"bc1qracer{i:02d}", collection.id) for i in range(2 * N)
        ])

        assert sum(results) == N
        async with session_factory() as db:
            items = (await db.execute(
                select(MintAttempt.supply_item_id).where(MintAttempt.collection_id == collection.id)
            )).scalars().all()
        assert len(items) == N
        assert len(set(items)) == N

    @pytest.mark.asyncio
    async def test_phase_pool_under_burst(self, session_factory, settings, make_launch):
        collection, _ = await make_launch(supply=20, phase_allocation=N)

        results = await asyncio.gather(*[
            _claim(session_factory, settings, f"bc1qpool{i:02d}", collection.id) for i in range(2 * N)
        ])

        assert sum(results) == N


class TestConcurrentCommits:
    """Commit broadcasts re-check the wallet cap under the lock"""

    @pytest.mark.asyncio
    async def test_wallet_cap_on_commit_burst(self, session_factory, settings, make_launch):
        # Claims made while the phase was uncapped, then the cap is lowered
        collection, phase = await make_launch(supply=20, max_per_wallet=None)
        for _ in range(2 * N):
            assert await _claim(session_factory, settings, WALLET_A, collection.id)

        async with session_factory() as db:
            await db.execute(update(MintPhase).where(MintPhase.id == phase.id).values(max_per_wallet=N))
            await db.commit()
            attempt_ids = (await db.execute(
                select(MintAttempt.id).where(MintAttempt.minter_wallet == WALLET_A)
            )).scalars().all()
        assert len(attempt_ids) == 2 * N

        results = await asyncio.gather(*[
            _commit(session_factory, settings, WALLET_A, attempt_id) for attempt_id in attempt_ids
        ])

        assert sum(results) == N
        async with session_factory() as db:
            committed = (await db.execute(
                select(func.count(MintAttempt.id)).where(
                    MintAttempt.minter_wallet == WALLET_A,
                    MintAttempt.commit_tx_id.isnot(None),
                )
            )).scalar_one()
        assert committed == N
