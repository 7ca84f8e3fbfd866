"""Polling engines.

This package provides the run pipeline:
- Mailbox traversal for one account (folders, messages, replies)
- Run coordinator across all active accounts
- Manual and scheduled triggers
"""

from autoreply.engine.coordinator import TRIGGER_LABELS, RunCoordinator, RunSummary
from autoreply.engine.mailbox import DEFAULT_FOLDERS, AccountResult, MailboxTraversal
from autoreply.engine.triggers import build_coordinator, run_manual, run_scheduled

__all__ = [
    # Traversal
    "DEFAULT_FOLDERS",
    "AccountResult",
    "MailboxTraversal",
    # Coordinator
    "TRIGGER_LABELS",
    "RunCoordinator",
    "RunSummary",
    # Triggers
    "build_coordinator",
    "run_manual",
    "run_scheduled",
]
