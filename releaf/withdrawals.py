"""
Withdrawal workflow.

A member asks to cash out part of their balance to an external wallet
address; an admin approves (booking the deduction) or rejects, then marks an
approved request completed with the on-chain transaction hash.

    pending --> approved --> completed
        \\
         `--> rejected
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from .errors import (
    DuplicatePendingRequest,
    InsufficientBalance,
    InvalidStateTransition,
    NotFound,
    ValidationError,
)
from .models import (
    Caller,
    TransactionStatus,
    TransactionType,
    WithdrawalCreate,
    WithdrawalRequest,
    WithdrawalRequestDetail,
    WithdrawalStatus,
    WithdrawalStatusUpdate,
)
from .permissions import ensure_admin, ensure_can_access
from .service import LedgerService

logger = logging.getLogger(__name__)


class WithdrawalService:
    def __init__(self, ledger: Optional[LedgerService] = None):
        self.ledger = ledger or LedgerService()
        self.storage = self.ledger.storage

    # -- address -----------------------------------------------------------

    def get_address(self, caller: Caller) -> Optional[str]:
        return self.ledger.get_user_row(caller.user_id)["withdrawal_address"]

    def set_address(self, caller: Caller, address: str) -> str:
        """Store the caller's payout address. Free text: no chain-specific checks."""
        address = (address or "").strip()
        if not address:
            raise ValidationError("Withdrawal address is required", {"field": "withdrawal_address"})

        user = self.ledger.get_user_row(caller.user_id)
        user["withdrawal_address"] = address
        user["updated_at"] = datetime.now(timezone.utc)
        logger.info("User %s updated withdrawal address", caller.user_id)
        return address

    # -- requests ----------------------------------------------------------

    def create_request(self, caller: Caller, request: WithdrawalCreate) -> WithdrawalRequest:
        with self.storage.user_lock(caller.user_id):
            self.ledger.get_user_row(caller.user_id)
            balance = self.ledger.calculate_balance(caller.user_id).balance
            if request.amount > balance:
                logger.warning(
                    "User %s asked to withdraw %s with balance %s", caller.user_id, request.amount, balance
                )
                raise InsufficientBalance(
                    "Insufficient balance",
                    {"requested": str(request.amount), "balance": str(balance)},
                )

            if self._pending_request_for(caller.user_id):
                raise DuplicatePendingRequest("You already have a pending withdrawal request")

            now = datetime.now(timezone.utc)
            request_id = self.storage.next_id("withdrawal_requests")
            row = {
                "id": request_id,
                "user_id": caller.user_id,
                "amount": request.amount,
                "withdrawal_address": request.withdrawal_address,
                "status": WithdrawalStatus.PENDING,
                "processed_by": None,
                "processed_at": None,
                "transaction_hash": None,
                "notes": request.notes,
                "created_at": now,
                "updated_at": now,
            }
            self.storage.withdrawal_requests[request_id] = row

        logger.info("Withdrawal request %s for %s created by user %s", request_id, request.amount, caller.user_id)
        return WithdrawalRequest(**row)

    def set_request_status(
        self, caller: Caller, request_id: int, update: WithdrawalStatusUpdate
    ) -> WithdrawalRequest:
        ensure_admin(caller)
        row = self.storage.withdrawal_requests.get(request_id)
        if not row:
            raise NotFound("Withdrawal request not found")

        target = update.status
        transaction_hash = (update.transaction_hash or "").strip() or None

        with self.storage.user_lock(row["user_id"]):
            current = WithdrawalRequest(**row)
            if not current.can_transition_to(target):
                logger.warning(
                    "Rejected withdrawal %s transition %s -> %s", request_id, current.status.value, target.value
                )
                raise InvalidStateTransition(
                    f"Cannot move withdrawal request from {current.status.value} to {target.value}",
                    {"current_status": current.status.value, "requested_status": target.value},
                )

            if target == WithdrawalStatus.COMPLETED and not transaction_hash:
                raise ValidationError(
                    "Transaction hash is required to complete a withdrawal",
                    {"field": "transaction_hash"},
                )

            if target == WithdrawalStatus.APPROVED:
                balance = self.ledger.calculate_balance(current.user_id).balance
                if current.amount > balance:
                    raise InsufficientBalance(
                        "User has insufficient balance",
                        {"requested": str(current.amount), "balance": str(balance)},
                    )
                self.ledger.record_transaction(
                    user_id=current.user_id,
                    amount=current.amount,
                    type=TransactionType.DEDUCTION,
                    status=TransactionStatus.COMPLETED,
                    processed_by=caller.user_id,
                    notes=f"Withdrawal #{request_id}: {update.notes or 'Approved withdrawal request'}",
                )

            now = datetime.now(timezone.utc)
            row["status"] = target
            row["processed_by"] = caller.user_id
            row["processed_at"] = now
            row["updated_at"] = now
            if update.notes is not None:
                row["notes"] = update.notes
            if target == WithdrawalStatus.COMPLETED:
                row["transaction_hash"] = transaction_hash

        logger.info("Withdrawal request %s %s by admin %s", request_id, target.value, caller.user_id)
        return WithdrawalRequest(**row)

    def list_requests(
        self, caller: Caller, status: Optional[WithdrawalStatus] = None
    ) -> list[WithdrawalRequestDetail]:
        rows = [
            row for row in list(self.storage.withdrawal_requests.values())
            if (caller.is_admin or row["user_id"] == caller.user_id)
            and (status is None or row["status"] == status)
        ]
        rows.sort(key=lambda r: (r["created_at"], r["id"]), reverse=True)
        return [self._detail(row) for row in rows]

    def get_request(self, caller: Caller, request_id: int) -> WithdrawalRequestDetail:
        row = self.storage.withdrawal_requests.get(request_id)
        if not row:
            raise NotFound("Withdrawal request not found")
        ensure_can_access(caller, row["user_id"], "withdrawal request")
        return self._detail(row)

    def _detail(self, row: dict) -> WithdrawalRequestDetail:
        user = self.storage.users.get(row["user_id"]) or {}
        return WithdrawalRequestDetail(**row, user_name=user.get("name"), user_email=user.get("email"))

    def _pending_request_for(self, user_id: int) -> bool:
        return any(
            row["user_id"] == user_id and row["status"] == WithdrawalStatus.PENDING
            for row in list(self.storage.withdrawal_requests.values())
        )
