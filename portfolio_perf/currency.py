"""FX conversion helpers."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Mapping, Optional, Union

logger = logging.getLogger(__name__)


class Currency(str, Enum):
    USD = "USD"
    ILS = "ILS"
    ILA = "ILA"  # agorot, 1/100 ILS
    EUR = "EUR"
    GBP = "GBP"


_ALIASES: Dict[str, Currency] = {
    'ש"ח': Currency.ILS,
    "NIS": Currency.ILS,
    "ILS": Currency.ILS,
    "אג": Currency.ILA,
    "ILA": Currency.ILA,
    "ILAG": Currency.ILA,
    "AGOROT": Currency.ILA,
    "AG": Currency.ILA,
    "דולר": Currency.USD,
    "$": Currency.USD,
    "DOLLAR": Currency.USD,
    "USD": Currency.USD,
    "אירו": Currency.EUR,
    "EUR": Currency.EUR,
    "EURO": Currency.EUR,
    'ליש"ט': Currency.GBP,
    "LIRA": Currency.GBP,
    "GBP": Currency.GBP,
}


def normalize_currency(value: Union[str, Currency, None]) -> Currency:
    """Map a currency code or alias onto :class:`Currency`.

    Empty input defaults to USD; unknown codes raise ``ValueError``.
    """

    if isinstance(value, Currency):
        return value
    if not value:
        return Currency.USD
    key = value.strip().upper()
    if key not in _ALIASES:
        raise ValueError(f"Unknown currency: {value}")
    return _ALIASES[key]


@dataclass
class ExchangeRates:
    """Exchange-rate snapshot quoted as units of each currency per 1 USD."""

    current: Dict[str, float]
    snapshots: Dict[str, Dict[str, float]] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, payload: Mapping) -> "ExchangeRates":
        """Accept either a flat rate table or ``{"current": {...}, ...}``."""

        if "current" in payload and isinstance(payload["current"], Mapping):
            snapshots = {
                k: dict(v) for k, v in payload.items() if k != "current" and isinstance(v, Mapping)
            }
            return cls(current=dict(payload["current"]), snapshots=snapshots)
        return cls(current={k: v for k, v in payload.items() if not isinstance(v, Mapping)})


RatesLike = Union[ExchangeRates, Mapping, None]


def _rate_table(rates: RatesLike) -> Optional[Mapping[str, float]]:
    if rates is None:
        return None
    if isinstance(rates, ExchangeRates):
        return rates.current
    if "current" in rates and isinstance(rates["current"], Mapping):
        return rates["current"]
    return rates


def convert_currency(
    amount: float,
    from_currency: Union[str, Currency, None],
    to_currency: Union[str, Currency, None],
    rates: RatesLike,
) -> float:
    """Convert ``amount`` between currencies using a USD-based rate table.

    Returns 0 when the amount is not a finite number or a required rate is
    missing.
    """

    if not isinstance(amount, (int, float)) or not math.isfinite(amount):
        logger.error("convert_currency: invalid amount %r", amount)
        return 0.0

    source = normalize_currency(from_currency)
    target = normalize_currency(to_currency)
    if source == target:
        return amount

    if source == Currency.ILA and target == Currency.ILS:
        return amount / 100
    if source == Currency.ILS and target == Currency.ILA:
        return amount * 100

    table = _rate_table(rates)
    if not table:
        logger.error("convert_currency: missing exchange rates for %s -> %s", source.value, target.value)
        return 0.0

    source_rate = table.get(Currency.ILS.value if source == Currency.ILA else source.value)
    target_rate = table.get(Currency.ILS.value if target == Currency.ILA else target.value)

    if source != Currency.USD and not source_rate:
        logger.warning("convert_currency: missing or zero rate for source currency %s", source.value)
        return 0.0
    if target != Currency.USD and not target_rate:
        logger.warning("convert_currency: missing or zero rate for target currency %s", target.value)
        return 0.0

    major_amount = amount / 100 if source == Currency.ILA else amount
    amount_usd = major_amount if source == Currency.USD else major_amount / source_rate
    result = amount_usd if target == Currency.USD else amount_usd * target_rate

    if target == Currency.ILA:
        return result * 100
    return result


__all__ = ["Currency", "ExchangeRates", "RatesLike", "convert_currency", "normalize_currency"]
