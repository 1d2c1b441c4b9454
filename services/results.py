"""
Operation results returned to the command layer.

The engine never renders chat markup: it returns the updated record, a short
message, and the names of follow-up actions the caller may offer.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from models import Trade


@dataclass
class TradeResult:
    trade: Trade
    message: str = ""
    actions: List[str] = field(default_factory=list)
    notify: List[int] = field(default_factory=list)


@dataclass
class DepositOutcome:
    """Result of consuming one deposit reference"""
    trade: Trade
    tx_ref: str
    credited: Decimal
    accumulated: Decimal
    expected: Decimal
    remaining: Decimal
    over_delivery: Decimal
    complete: bool
    message: str = ""


@dataclass
class SettlementOutcome:
    """Result of a release/refund request or approval"""
    trade: Trade
    kind: str
    mode: Optional[str] = None
    amount: Optional[Decimal] = None
    executed: bool = False
    tx_ref: Optional[str] = None
    awaiting: List[str] = field(default_factory=list)
    message: str = ""
