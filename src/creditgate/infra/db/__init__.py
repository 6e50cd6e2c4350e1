"""SQL persistence: accounts, the credit ledger and webhook claims.

Everything that affects money lives here and only here; there is no
in-memory fallback for any of it.
"""

from .deps import build_ledger, get_credit_ledger, get_idempotency_cache
from .idempotency import ClaimResult, IdempotencyCache, IdempotencyStatus
from .ledger import AccountSnapshot, CreditLedger, TransactionMeta
from .models import (
    Account,
    Base,
    CreditTransaction,
    IdempotencyRecord,
    TRANSACTION_PURCHASE,
    TRANSACTION_SUBSCRIPTION_RENEWAL,
)

__all__ = [
    "Account",
    "AccountSnapshot",
    "Base",
    "ClaimResult",
    "CreditLedger",
    "CreditTransaction",
    "IdempotencyCache",
    "IdempotencyRecord",
    "IdempotencyStatus",
    "TRANSACTION_PURCHASE",
    "TRANSACTION_SUBSCRIPTION_RENEWAL",
    "TransactionMeta",
    "build_ledger",
    "get_credit_ledger",
    "get_idempotency_cache",
]
