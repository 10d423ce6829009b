"""
Shared symbol helpers for USDT-settled perpetual contracts.

- BTC (ledger symbol) <-> BTC_USDT (contract id) <-> BTC/USDT:USDT (CCXT unified)
- exchange_position_side: determine position side from an exchange dict

This module is the single source of truth for symbol conversion. The ledger
and the trackers key on the bare base asset; the gateway speaks contract ids.
"""
from __future__ import annotations

from typing import Any, Dict

from position_guard.constants import DEFAULT_SETTLE_CURRENCY


def contract_for_symbol(symbol: str, settle: str = DEFAULT_SETTLE_CURRENCY) -> str:
    """BTC -> BTC_USDT."""
    return f"{symbol.upper()}_{settle.upper()}"


def symbol_from_contract(contract: str, settle: str = DEFAULT_SETTLE_CURRENCY) -> str:
    """
    Strip the settle suffix from a contract id.

    BTC_USDT -> BTC, BTC-USDT-SWAP -> BTC, BTC/USDT:USDT -> BTC.
    """
    if not contract:
        return ""
    s = str(contract).upper()
    s = s.split(":")[0]
    s = s.replace("-SWAP", "")
    for sep in ("_", "/", "-"):
        suffix = f"{sep}{settle.upper()}"
        if s.endswith(suffix):
            return s[: -len(suffix)]
    return s


def unified_symbol_for_contract(contract: str, settle: str = DEFAULT_SETTLE_CURRENCY) -> str:
    """BTC_USDT -> BTC/USDT:USDT (CCXT unified swap symbol)."""
    base = symbol_from_contract(contract, settle)
    return f"{base}/{settle.upper()}:{settle.upper()}"


def contract_for_unified_symbol(unified: str, settle: str = DEFAULT_SETTLE_CURRENCY) -> str:
    """BTC/USDT:USDT -> BTC_USDT."""
    return contract_for_symbol(symbol_from_contract(unified, settle), settle)


def exchange_position_side(pos_data: Dict[str, Any]) -> str:
    """
    Determine position side from an exchange position dict.

    Prefers the explicit side field; falls back to the sign of the size.
    """
    side = str(pos_data.get("side") or "").lower()
    if side in ("long", "buy"):
        return "long"
    if side in ("short", "sell"):
        return "short"
    try:
        size = float(pos_data.get("contracts") or pos_data.get("size") or 0)
    except (TypeError, ValueError):
        size = 0.0
    return "short" if size < 0 else "long"
