"""
Read access to synced transactions and accounts.

Histories can be arbitrarily long, so transactions are paged rather than
fetched in one query.
"""

from dataclasses import dataclass
from datetime import date
from typing import Iterator, List, Optional

from sqlalchemy.orm import Session

from billwatch.config import settings
from billwatch.models.account import Account
from billwatch.models.transaction import Transaction


@dataclass(frozen=True)
class TransactionRecord:
    """The slice of a transaction the detection pipeline reads."""
    id: str
    date: date
    amount: float
    raw_description: str
    merchant_hint: Optional[str] = None
    category_tag: Optional[str] = None


def _live_accounts(db: Session):
    return db.query(Account).filter(
        Account.deleted_at.is_(None),
        Account.is_active == True
    )


def has_connected_accounts(db: Session, user_id: str) -> bool:
    return _live_accounts(db).filter(Account.user_id == user_id).first() is not None


def list_active_user_ids(db: Session) -> List[str]:
    """Users owning at least one live account."""
    rows = _live_accounts(db).with_entities(Account.user_id).distinct().all()
    return sorted(row[0] for row in rows)


def iter_expense_transactions(
    db: Session,
    user_id: str,
    page_size: Optional[int] = None
) -> Iterator[TransactionRecord]:
    """Yield the user's expense transactions oldest first, one page at a time."""
    page_size = page_size or settings.transaction_page_size
    account_ids = _live_accounts(db).filter(Account.user_id == user_id).with_entities(Account.id)

    offset = 0
    while True:
        page = db.query(Transaction).filter(
            Transaction.account_id.in_(account_ids.scalar_subquery()),
            Transaction.amount > 0
        ).order_by(Transaction.date, Transaction.id).offset(offset).limit(page_size).all()

        for t in page:
            yield TransactionRecord(
                id=str(t.id),
                date=t.date,
                amount=float(t.amount),
                raw_description=t.raw_description,
                merchant_hint=t.ai_merchant_name or t.merchant_name,
                category_tag=t.ai_category_tag,
            )

        if len(page) < page_size:
            break
        offset += len(page)


def load_expense_transactions(db: Session, user_id: str, page_size: Optional[int] = None) -> List[TransactionRecord]:
    return list(iter_expense_transactions(db, user_id, page_size))
