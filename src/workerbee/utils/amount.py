from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

# Asset ids used by the appbase (NAI) amount encoding.
NAI_SYMBOLS = {
    "@@000000021": "HIVE",
    "@@000000013": "HBD",
    "@@000000037": "VESTS",
}
_LEGACY_ALIASES = {"STEEM": "HIVE", "SBD": "HBD", "TESTS": "HIVE", "TBD": "HBD"}


@dataclass(frozen=True)
class Amount:
    value: Decimal
    symbol: str

    def __str__(self) -> str:
        return f"{self.value} {self.symbol}"


def parse_amount(raw: Any) -> Amount:
    """
    Parse either amount encoding.

        legacy : "1.000 HIVE"
        NAI    : {"amount": "1000", "precision": 3, "nai": "@@000000021"}
    """
    amount = _parse(raw)
    if not amount.value.is_finite():
        raise ValueError(f"amount must be finite, got {raw!r}")
    return amount


def _parse(raw: Any) -> Amount:
    if isinstance(raw, str):
        parts = raw.split()
        if len(parts) != 2:
            raise ValueError(f"invalid amount {raw!r}")
        try:
            value = Decimal(parts[0])
        except InvalidOperation as exc:
            raise ValueError(f"invalid amount {raw!r}") from exc
        symbol = parts[1].upper()
        return Amount(value, _LEGACY_ALIASES.get(symbol, symbol))
    if isinstance(raw, Mapping):
        try:
            nai = raw["nai"]
            value = Decimal(str(raw["amount"])).scaleb(-int(raw["precision"]))
        except (KeyError, TypeError, ValueError, InvalidOperation) as exc:
            raise ValueError(f"invalid NAI amount {raw!r}") from exc
        return Amount(value, NAI_SYMBOLS.get(nai, str(nai)))
    raise ValueError(f"unsupported amount encoding: {type(raw).__name__}")
