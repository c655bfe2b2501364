from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from core.errors import InsufficientCredits, NotFound, ValidationError

logger = logging.getLogger(__name__)

MAX_TRANSACTION_AMOUNT = 1_000_000

DEBIT = "debit"
REFUND = "refund"
GRANT = "grant"


@dataclass
class CreditAccount:
    owner_id: str
    balance: int = 0
    total_debited: int = 0
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass(frozen=True)
class CreditTransaction:
    id: str
    owner_id: str
    type: str
    amount: int
    balance_before: int
    balance_after: int
    created_at: datetime
    related_job_id: Optional[str] = None
    reason: str = ""


class CreditLedger:
    """Append-only credit log with a cached balance per account.

    Each mutation appends one transaction and moves the cached balance inside
    the same critical section, so readers never see one without the other.
    Refunds are unique per job and only return credits a debit for that job
    took: those checks and the append share that critical section too.
    """

    def __init__(self) -> None:
        self._accounts: Dict[str, CreditAccount] = {}
        self._transactions: List[CreditTransaction] = []
        self._debits_by_job: Dict[str, CreditTransaction] = {}
        self._refunds_by_job: Dict[str, CreditTransaction] = {}
        self._lock = threading.Lock()

    def open_account(self, owner_id: str) -> CreditAccount:
        with self._lock:
            return self._ensure_account(owner_id)

    def has_account(self, owner_id: str) -> bool:
        with self._lock:
            return owner_id in self._accounts

    def get_account(self, owner_id: str) -> CreditAccount:
        with self._lock:
            account = self._accounts.get(owner_id)
            if not account:
                raise NotFound(f"credit account {owner_id} not found", user_message="Account not found")
            return CreditAccount(**account.__dict__)

    def balance(self, owner_id: str) -> int:
        with self._lock:
            account = self._accounts.get(owner_id)
            return account.balance if account else 0

    def debit(self, owner_id: str, amount: int, related_job_id: Optional[str] = None, reason: str = "") -> int:
        _check_amount(amount)
        with self._lock:
            account = self._accounts.get(owner_id)
            available = account.balance if account else 0
            if not account or available < amount:
                raise InsufficientCredits(required=amount, available=available)
            account.total_debited += amount
            txn = self._append(account, DEBIT, amount, related_job_id, reason or "Video generation")
            if related_job_id:
                self._debits_by_job[related_job_id] = txn
        logger.info("debited %s credits from %s for job %s (balance %s)", amount, owner_id, related_job_id, txn.balance_after)
        return txn.balance_after

    def refund(self, owner_id: str, amount: int, related_job_id: str, reason: str = "") -> int:
        _check_amount(amount)
        with self._lock:
            account = self._accounts.get(owner_id)
            if not account:
                raise NotFound(f"credit account {owner_id} not found", user_message="Account not found")
            if related_job_id in self._refunds_by_job:
                logger.info("refund for job %s already recorded, skipping", related_job_id)
                return account.balance
            debit = self._debits_by_job.get(related_job_id)
            if not debit or debit.owner_id != owner_id:
                raise ValidationError(f"no debit from {owner_id} recorded for job {related_job_id}")
            if amount > debit.amount:
                raise ValidationError(f"refund of {amount} exceeds the {debit.amount} debited for job {related_job_id}")
            account.total_debited = max(0, account.total_debited - amount)
            txn = self._append(account, REFUND, amount, related_job_id, reason or "Refund for failed video generation")
            self._refunds_by_job[related_job_id] = txn
        logger.info("refunded %s credits to %s for job %s (balance %s)", amount, owner_id, related_job_id, txn.balance_after)
        return txn.balance_after

    def grant(self, owner_id: str, amount: int, reason: str) -> int:
        _check_amount(amount)
        with self._lock:
            account = self._ensure_account(owner_id)
            txn = self._append(account, GRANT, amount, None, reason)
        logger.info("granted %s credits to %s: %s", amount, owner_id, reason)
        return txn.balance_after

    def has_refund(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._refunds_by_job

    def history(self, owner_id: str, limit: Optional[int] = None) -> List[CreditTransaction]:
        with self._lock:
            rows = [txn for txn in self._transactions if txn.owner_id == owner_id]
        rows.reverse()
        return rows[:limit] if limit else rows

    def transactions(self) -> Iterator[CreditTransaction]:
        with self._lock:
            snapshot = list(self._transactions)
        return iter(snapshot)

    def debits_for_job(self, job_id: str) -> List[CreditTransaction]:
        with self._lock:
            return [txn for txn in self._transactions if txn.type == DEBIT and txn.related_job_id == job_id]

    def recompute_balance(self, owner_id: str) -> int:
        total = 0
        for txn in self.history(owner_id):
            if txn.type == DEBIT:
                total -= txn.amount
            else:
                total += txn.amount
        return total

    def stats(self, owner_id: str, now: Optional[datetime] = None) -> dict:
        now = now or datetime.utcnow()
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        stats = {
            "total_granted": 0,
            "total_used": 0,
            "total_refunded": 0,
            "monthly_usage": 0,
            "current_balance": self.balance(owner_id),
        }
        for txn in self.history(owner_id):
            if txn.type == GRANT:
                stats["total_granted"] += txn.amount
            elif txn.type == DEBIT:
                stats["total_used"] += txn.amount
                if txn.created_at >= month_start:
                    stats["monthly_usage"] += txn.amount
            elif txn.type == REFUND:
                stats["total_refunded"] += txn.amount
        return stats

    def _ensure_account(self, owner_id: str) -> CreditAccount:
        account = self._accounts.get(owner_id)
        if not account:
            account = CreditAccount(owner_id=owner_id)
            self._accounts[owner_id] = account
        return account

    def _append(
        self,
        account: CreditAccount,
        txn_type: str,
        amount: int,
        related_job_id: Optional[str],
        reason: str,
    ) -> CreditTransaction:
        before = account.balance
        after = before - amount if txn_type == DEBIT else before + amount
        now = datetime.utcnow()
        txn = CreditTransaction(
            id=str(uuid.uuid4()),
            owner_id=account.owner_id,
            type=txn_type,
            amount=amount,
            balance_before=before,
            balance_after=after,
            created_at=now,
            related_job_id=related_job_id,
            reason=reason,
        )
        self._transactions.append(txn)
        account.balance = after
        account.updated_at = now
        return txn


def _check_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError("amount must be an integer number of credits")
    if amount <= 0:
        raise ValidationError("amount must be greater than 0")
    if amount > MAX_TRANSACTION_AMOUNT:
        raise ValidationError(f"amount cannot exceed {MAX_TRANSACTION_AMOUNT:,}")
