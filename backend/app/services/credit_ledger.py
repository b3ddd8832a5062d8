"""Credit ledger: debit/credit interface with lock-then-recheck debits."""
import enum

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.credits import CreditBalance, CreditTransaction

logger = structlog.get_logger()


class DebitResult(str, enum.Enum):
    OK = "ok"
    INSUFFICIENT = "insufficient"


class CreditLedger:
    """Wallet credit balances"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def balance(self, wallet: str) -> int:
        result = await self.db.execute(
            select(CreditBalance.credits).where(CreditBalance.wallet_address == wallet)
        )
        return result.scalar_one_or_none() or 0

    async def debit(self, wallet: str, amount: int, description: str = "") -> DebitResult:
        """
        Take `amount` credits from a wallet.

        The balance row is locked, re-checked under the lock and only then
        decremented. The conditional UPDATE is the final guard on backends
        without row locks.
        """
        if amount <= 0:
            return DebitResult.OK

        locked = await self.db.execute(
            select(CreditBalance.credits)
            .where(CreditBalance.wallet_address == wallet)
            .with_for_update()
        )
        current = locked.scalar_one_or_none()
        if current is None or current < amount:
            logger.info("Credit debit refused", wallet=wallet, amount=amount, balance=current or 0)
            return DebitResult.INSUFFICIENT

        result = await self.db.execute(
            update(CreditBalance)
            .where(CreditBalance.wallet_address == wallet, CreditBalance.credits >= amount)
            .values(credits=CreditBalance.credits - amount)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return DebitResult.INSUFFICIENT

        self.db.add(CreditTransaction(
            wallet_address=wallet,
            amount=-amount,
            transaction_type="debit",
            description=description or None,
        ))
        await self.db.flush()
        logger.info("Credits debited", wallet=wallet, amount=amount)
        return DebitResult.OK

    async def credit(self, wallet: str, amount: int, description: str = "", transaction_type: str = "credit") -> int:
        """Add credits to a wallet, creating the balance row if needed. Returns the new balance."""
        if amount <= 0:
            raise ValueError("amount must be positive")

        result = await self.db.execute(
            update(CreditBalance)
            .where(CreditBalance.wallet_address == wallet)
            .values(credits=CreditBalance.credits + amount)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.db.add(CreditBalance(wallet_address=wallet, credits=amount))

        self.db.add(CreditTransaction(
            wallet_address=wallet,
            amount=amount,
            transaction_type=transaction_type,
            description=description or None,
        ))
        await self.db.flush()
        return await self.balance(wallet)
