"""
Version ledger — serial assignment, history, restore source, pruning.

    from statekeeper.core.services.ledger import VersionLedger

    version = ledger.commit("prod/vpc", base_serial=0, payload=b"{...}")
    snapshot = ledger.current("prod/vpc")
"""

from statekeeper.core.services.ledger.ledger import VersionLedger
from statekeeper.core.services.ledger.retention import select_prunable

__all__ = ["VersionLedger", "select_prunable"]
