"""Coin balance transfers and grants."""

from typing import Any

from premium_ledger.clock import Clock, SystemClock
from premium_ledger.logging_config import get_logger
from premium_ledger.storage.db import Database, db
from premium_ledger.storage.models import ItemType, TransactionStatus, TransactionType
from premium_ledger.storage.repo import AccountRepository, TransactionLogRepository

logger = get_logger(__name__)


class InsufficientCoinsError(Exception):
    """Raised when an account doesn't have enough coins."""

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(f"Insufficient coins: need {required}, have {available}")


class WalletService:
    """Moves coins between accounts.

    A transfer is one unit of work: the debit, the credit and both audit
    rows commit together or not at all.
    """

    def __init__(self, database: Database | None = None, clock: Clock | None = None):
        self.db = database or db
        self.clock = clock or SystemClock()
        self.logger = get_logger(__name__)

    def transfer_coins(
        self,
        sender_id: int,
        recipient_id: int,
        amount: int,
        message: str | None = None,
    ) -> dict[str, Any]:
        """Gift coins from one account to another.

        Args:
            sender_id: Account debited
            recipient_id: Account credited
            amount: Coins to move, must be positive
            message: Optional note stored on both audit rows

        Returns:
            Dict with both accounts' new balances

        Raises:
            ValueError: If the amount is not positive or the accounts are the same
            AccountNotFoundError: If either account does not exist
            InsufficientCoinsError: If the sender can't cover the amount
        """
        if amount <= 0:
            raise ValueError("Transfer amount must be positive")
        if sender_id == recipient_id:
            raise ValueError("Cannot transfer coins to yourself")

        now = self.clock.now()
        coins = ItemType.COINS.value
        with self.db.session() as session:
            accounts = AccountRepository(session)
            logs = TransactionLogRepository(session)
            accounts.require(sender_id)
            accounts.require(recipient_id)

            if accounts.increment_balance(sender_id, coins, -amount) == 0:
                raise InsufficientCoinsError(amount, accounts.balance(sender_id, coins) or 0)
            accounts.increment_balance(recipient_id, coins, amount)

            for account_id, direction, counterparty in (
                (sender_id, "sent", recipient_id),
                (recipient_id, "received", sender_id),
            ):
                logs.create(
                    account_id=account_id,
                    transaction_type=TransactionType.TRANSFER.value,
                    item_type=coins,
                    amount=amount,
                    status=TransactionStatus.COMPLETED.value,
                    metadata_json={"direction": direction, "counterparty_id": counterparty, "message": message},
                    created_at=now,
                    updated_at=now,
                    completed_at=now,
                )

            result = {
                "sender_balance": accounts.balance(sender_id, coins),
                "recipient_balance": accounts.balance(recipient_id, coins),
            }

        self.logger.info("coins_transferred", sender_id=sender_id, recipient_id=recipient_id, amount=amount)
        return result

    def grant_coins(self, account_id: int, amount: int, reason: str) -> int:
        """Add reward coins to an account and return the new balance."""
        if amount <= 0:
            raise ValueError("Grant amount must be positive")

        with self.db.session() as session:
            accounts = AccountRepository(session)
            accounts.require(account_id)
            accounts.increment_balance(account_id, ItemType.COINS.value, amount)
            balance = accounts.balance(account_id, ItemType.COINS.value)

        self.logger.info("coins_granted", account_id=account_id, amount=amount, reason=reason)
        return balance
