"""
Reconciliation Mode Registry

Central registry of the two reconciliation modes and their tolerance windows.
Each mode has:
- Unique identifier
- Display name
- Counterpart type it matches bank debits against
- Tier tolerances (exact, close, discrepancy)

Supported Modes:
- RECEIPT: bank debits against unmatched receipts (OCR / manual capture)
- STATEMENT: bank debits of one statement against active company expenses
"""

from enum import Enum
from decimal import Decimal
from typing import Dict, Any, List, Optional
from dataclasses import dataclass


class ReconciliationMode(str, Enum):
    """
    Recognised reconciliation modes.
    """
    RECEIPT = "receipt"
    STATEMENT = "statement"


class CounterpartType(str, Enum):
    """
    What a bank transaction gets paired with.
    """
    RECEIPT = "receipt"
    EXPENSE = "expense"


class MatchStatus(str, Enum):
    """
    Match status stored on a bank transaction.
    """
    UNMATCHED = "unmatched"       # Not yet paired
    MATCHED = "matched"           # Paired at high or medium confidence
    DISCREPANCY = "discrepancy"   # Paired on date, amount differs


class MatchConfidence(str, Enum):
    """
    Confidence tier of a match decision.
    """
    HIGH = "high"                 # Same day, amount within exact tolerance
    MEDIUM = "medium"             # Within close window (receipt mode)
    DISCREPANCY = "discrepancy"   # Date agrees, amount does not (statement mode)

    @property
    def match_status(self) -> MatchStatus:
        if self is MatchConfidence.DISCREPANCY:
            return MatchStatus.DISCREPANCY
        return MatchStatus.MATCHED


@dataclass
class ModeConfig:
    """
    Tolerance configuration for a reconciliation mode.

    A tier whose window is None is disabled for the mode.
    """
    mode: ReconciliationMode
    display_name: str
    counterpart_type: CounterpartType
    enabled: bool
    exact_amount_tolerance: Decimal
    close_amount_tolerance: Optional[Decimal] = None
    close_date_window_days: Optional[int] = None
    discrepancy_date_window_days: Optional[int] = None

    @property
    def close_tier_enabled(self) -> bool:
        return self.close_amount_tolerance is not None and self.close_date_window_days is not None

    @property
    def discrepancy_tier_enabled(self) -> bool:
        return self.discrepancy_date_window_days is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.value,
            "display_name": self.display_name,
            "counterpart_type": self.counterpart_type.value,
            "enabled": self.enabled,
            "exact_amount_tolerance": float(self.exact_amount_tolerance),
            "close_amount_tolerance": (
                float(self.close_amount_tolerance) if self.close_amount_tolerance is not None else None
            ),
            "close_date_window_days": self.close_date_window_days,
            "discrepancy_date_window_days": self.discrepancy_date_window_days,
        }


class ModeRegistry:
    """
    Central registry for reconciliation modes.

    Provides tolerance lookups for the matching engine.
    """

    _default_configs: Dict[ReconciliationMode, ModeConfig] = {
        ReconciliationMode.RECEIPT: ModeConfig(
            mode=ReconciliationMode.RECEIPT,
            display_name="Receipt Matcher",
            counterpart_type=CounterpartType.RECEIPT,
            enabled=True,
            exact_amount_tolerance=Decimal("0.01"),
            close_amount_tolerance=Decimal("0.05"),
            close_date_window_days=3,
        ),
        ReconciliationMode.STATEMENT: ModeConfig(
            mode=ReconciliationMode.STATEMENT,
            display_name="Statement Reconciler",
            counterpart_type=CounterpartType.EXPENSE,
            enabled=True,
            exact_amount_tolerance=Decimal("0.01"),
            discrepancy_date_window_days=1,
        ),
    }

    def __init__(self):
        self._configs = dict(self._default_configs)

    def get_config(self, mode: ReconciliationMode) -> ModeConfig:
        """Get configuration for a mode."""
        return self._configs[ReconciliationMode(mode)]

    def get_all_configs(self) -> List[ModeConfig]:
        return list(self._configs.values())

    def get_enabled_modes(self) -> List[ReconciliationMode]:
        return [cfg.mode for cfg in self._configs.values() if cfg.enabled]

    def is_mode_enabled(self, mode: ReconciliationMode) -> bool:
        cfg = self._configs.get(mode)
        return cfg.enabled if cfg else False

    def to_dict(self) -> Dict[str, Any]:
        """Export registry as dictionary."""
        return {
            mode.value: cfg.to_dict()
            for mode, cfg in self._configs.items()
        }


# Global registry instance
mode_registry = ModeRegistry()
