import logging
from datetime import datetime, timezone
from typing import Optional

from .errors import Conflict, NotFound, ValidationError
from .models import (
    DEBIT_TYPES,
    ZERO,
    AllocationRequest,
    Balance,
    Caller,
    Role,
    TokenTransaction,
    TokenTransactionDetail,
    TransactionStatus,
    TransactionType,
    UserBalanceSummary,
)
from .permissions import ensure_admin, ensure_can_access
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)


class LedgerService:
    """
    Token ledger: derived balances, admin allocations and the
    pending -> completed | cancelled review of transactions.

    Balances are never stored; every read rescans the user's transactions.
    """

    def __init__(self, storage: Optional[InMemoryStorage] = None):
        self.storage = storage or InMemoryStorage()

    # -- balances ----------------------------------------------------------

    def calculate_balance(self, user_id: int) -> Balance:
        total_earned = ZERO
        total_spent = ZERO
        pending_rewards = 0

        for row in list(self.storage.token_transactions.values()):
            if row["user_id"] != user_id:
                continue
            if row["status"] == TransactionStatus.COMPLETED:
                if row["type"] == TransactionType.REWARD:
                    total_earned += row["amount"]
                elif row["type"] in DEBIT_TYPES:
                    total_spent += row["amount"]
            elif row["status"] == TransactionStatus.PENDING and row["type"] == TransactionType.REWARD:
                pending_rewards += 1

        return Balance(
            user_id=user_id,
            total_earned=total_earned,
            total_spent=total_spent,
            balance=total_earned - total_spent,
            pending_rewards=pending_rewards,
        )

    def get_balance(self, caller: Caller, user_id: Optional[int] = None) -> Balance:
        user_id = caller.user_id if user_id is None else user_id
        ensure_can_access(caller, user_id, "balance")
        self.get_user_row(user_id)
        return self.calculate_balance(user_id)

    def list_balances(self, caller: Caller) -> list[UserBalanceSummary]:
        ensure_admin(caller)
        summaries = [
            UserBalanceSummary(
                **self.calculate_balance(user["id"]).model_dump(),
                name=user["name"],
                email=user["email"],
            )
            for user in list(self.storage.users.values())
            if user["role"] == Role.MEMBER
        ]
        summaries.sort(key=lambda s: (-s.balance, s.user_id))
        return summaries

    # -- allocation --------------------------------------------------------

    def allocate(self, caller: Caller, request: AllocationRequest) -> TokenTransaction:
        ensure_admin(caller)
        # tree check and insert share the table lock that delete_tree takes
        with self.storage.user_lock(request.user_id), self.storage.lock:
            self._check_allocation(request)
            return self._book_allocation(caller, request)

    def bulk_allocate(self, caller: Caller, allocations: list[AllocationRequest]) -> list[TokenTransaction]:
        """All-or-nothing: every item is checked before any row is written."""
        ensure_admin(caller)
        if not allocations:
            raise ValidationError("At least one allocation is required", {"field": "allocations"})

        with self.storage.locked_users(*(a.user_id for a in allocations)), self.storage.lock:
            for index, request in enumerate(allocations):
                self._check_allocation(request, index)
            transactions = [self._book_allocation(caller, request) for request in allocations]

        logger.info("Bulk allocation of %d transactions by admin %s", len(transactions), caller.user_id)
        return transactions

    def set_transaction_status(
        self, caller: Caller, transaction_id: int, status: TransactionStatus
    ) -> TokenTransaction:
        ensure_admin(caller)
        if status not in (TransactionStatus.COMPLETED, TransactionStatus.CANCELLED):
            raise ValidationError("status must be 'completed' or 'cancelled'", {"field": "status"})

        row = self.storage.token_transactions.get(transaction_id)
        if not row:
            raise Conflict("Transaction not found or already processed")

        with self.storage.user_lock(row["user_id"]):
            if not TokenTransaction(**row).can_process():
                logger.warning("Transaction %s is already %s", transaction_id, row["status"].value)
                raise Conflict("Transaction not found or already processed")

            row["status"] = status
            row["processed_by"] = caller.user_id
            row["processed_at"] = datetime.now(timezone.utc)

            if status == TransactionStatus.CANCELLED:
                self._adjust_tree_tokens(row, -row["amount"])

        logger.info("Transaction %s marked %s by admin %s", transaction_id, status.value, caller.user_id)
        return TokenTransaction(**row)

    # -- queries -----------------------------------------------------------

    def list_transactions(
        self,
        caller: Caller,
        user_id: Optional[int] = None,
        status: Optional[TransactionStatus] = None,
        type: Optional[TransactionType] = None,
    ) -> list[TokenTransactionDetail]:
        if not caller.is_admin:
            if user_id is not None:
                ensure_can_access(caller, user_id, "ledger")
            user_id = caller.user_id

        rows = [
            row for row in list(self.storage.token_transactions.values())
            if (user_id is None or row["user_id"] == user_id)
            and (status is None or row["status"] == status)
            and (type is None or row["type"] == type)
        ]
        rows.sort(key=lambda r: (r["created_at"], r["id"]), reverse=True)
        return [self._detail(row) for row in rows]

    def get_transaction(self, caller: Caller, transaction_id: int) -> TokenTransactionDetail:
        row = self.storage.token_transactions.get(transaction_id)
        if not row:
            raise NotFound(f"Transaction {transaction_id} not found")
        ensure_can_access(caller, row["user_id"], "transaction")
        return self._detail(row)

    def get_user_row(self, user_id: int) -> dict:
        user = self.storage.users.get(user_id)
        if not user:
            raise NotFound("User not found", {"user_id": user_id})
        return user

    def record_transaction(
        self,
        user_id: int,
        amount,
        type: TransactionType,
        status: TransactionStatus,
        processed_by: Optional[int] = None,
        tree_id: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> dict:
        """Append one ledger row. Callers hold the user's lock."""
        now = datetime.now(timezone.utc)
        completed = status == TransactionStatus.COMPLETED
        transaction_id = self.storage.next_id("token_transactions")
        row = {
            "id": transaction_id,
            "user_id": user_id,
            "tree_id": tree_id,
            "amount": amount,
            "type": type,
            "status": status,
            "processed_by": processed_by if completed else None,
            "processed_at": now if completed else None,
            "transaction_hash": None,
            "notes": notes,
            "created_at": now,
        }
        self.storage.token_transactions[transaction_id] = row
        return row

    # -- internals ---------------------------------------------------------

    def _detail(self, row: dict) -> TokenTransactionDetail:
        user = self.storage.users.get(row["user_id"]) or {}
        tree = self.storage.trees.get(row["tree_id"]) or {}
        return TokenTransactionDetail(
            **row,
            user_name=user.get("name"),
            user_email=user.get("email"),
            tree_location=tree.get("location"),
        )

    def _check_allocation(self, request: AllocationRequest, index: Optional[int] = None) -> None:
        details = {} if index is None else {"index": index}
        if request.user_id not in self.storage.users:
            raise NotFound("User not found", {**details, "user_id": request.user_id})
        if request.tree_id is not None and request.tree_id not in self.storage.trees:
            raise NotFound("Tree not found", {**details, "tree_id": request.tree_id})

    def _book_allocation(self, caller: Caller, request: AllocationRequest) -> TokenTransaction:
        status = TransactionStatus.COMPLETED if request.auto_approve else TransactionStatus.PENDING
        row = self.record_transaction(
            user_id=request.user_id,
            amount=request.amount,
            type=request.type,
            status=status,
            processed_by=caller.user_id,
            tree_id=request.tree_id,
            notes=request.notes,
        )
        # counted at insert time, whatever the status
        self._adjust_tree_tokens(row, request.amount)

        logger.info(
            "Allocated %s %s to user %s (transaction %s, %s)",
            request.amount, request.type.value, request.user_id, row["id"], status.value,
        )
        return TokenTransaction(**row)

    def _adjust_tree_tokens(self, row: dict, delta) -> None:
        if row["type"] != TransactionType.REWARD or row["tree_id"] is None:
            return
        with self.storage.lock:
            tree = self.storage.trees.get(row["tree_id"])
            if tree:
                tree["tokens_allocated"] += delta
                tree["updated_at"] = datetime.now(timezone.utc)
