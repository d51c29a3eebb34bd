"""Transaction stream filtering and ordering."""
from __future__ import annotations

import logging
from dataclasses import replace
from typing import Iterable, List, Sequence, Set

from .models import Holding, Transaction, as_utc_datetime

logger = logging.getLogger(__name__)


def apply_vesting(txn: Transaction) -> Transaction:
    """Return ``txn`` dated at its vesting date, if it has one."""

    if txn.vest_date:
        return replace(txn, date=txn.vest_date)
    return txn


def relevant_portfolio_ids(
    holdings: Iterable[Holding], transactions: Iterable[Transaction]
) -> Set[str]:
    ids = {h.portfolio_id for h in holdings}
    ids.update(t.portfolio_id for t in transactions)
    return ids


def is_transaction_list(transactions: object) -> bool:
    return isinstance(transactions, (list, tuple))


def normalize_transactions(
    holdings: Sequence[Holding],
    transactions: Sequence[Transaction],
) -> List[Transaction]:
    """Substitute vesting dates, keep relevant portfolios and sort by date.

    Future-dated transactions are kept. The sort is stable so same-day
    transactions retain their input order. A non-list input yields an empty
    list.
    """

    if not is_transaction_list(transactions):
        logger.warning("normalize_transactions received invalid transactions: %r", transactions)
        return []

    effective = [apply_vesting(t) for t in transactions]
    relevant = relevant_portfolio_ids(holdings, effective)
    selected = [t for t in effective if t.portfolio_id in relevant]
    return sorted(selected, key=lambda t: as_utc_datetime(t.date))


__all__ = [
    "apply_vesting",
    "is_transaction_list",
    "normalize_transactions",
    "relevant_portfolio_ids",
]
