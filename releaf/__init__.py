"""
Token ledger for tree-planting rewards

This package provides:
- Balances derived from completed ledger transactions
- Admin allocation of rewards and deductions (single and atomic bulk)
- Withdrawal requests: pending → approved → completed, or rejected
- Payout address management
- The tree registry that rewards trace back to
"""

from .models import (
    Balance,
    Caller,
    Role,
    TokenTransaction,
    TransactionStatus,
    TransactionType,
    WithdrawalRequest,
    WithdrawalStatus,
)
from .service import LedgerService
from .withdrawals import WithdrawalService

__all__ = [
    "Balance",
    "Caller",
    "Role",
    "TokenTransaction",
    "TransactionStatus",
    "TransactionType",
    "WithdrawalRequest",
    "WithdrawalStatus",
    "LedgerService",
    "WithdrawalService",
]
