"""Public API for CIX parsing and panel recovery."""

from cix_recovery.contracts import CixDocument, RecoveredPanel, RecoveryConfig
from cix_recovery.parser import parse_cix
from cix_recovery.recovery import recover_panels

__all__ = [
    "CixDocument",
    "RecoveredPanel",
    "RecoveryConfig",
    "parse_cix",
    "recover_panels",
]
