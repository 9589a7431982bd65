"""
Test Fixtures Package
Scripted custody provider, recording sleep/notifier and flow helpers
"""

from .custody_fixtures import (
    RecordingNotifier,
    RecordingSleep,
    ScriptedProvider,
    completed_token,
    link_and_approve,
    mint_asset,
    mint_params,
    task_status,
)

__all__ = [
    "RecordingNotifier",
    "RecordingSleep",
    "ScriptedProvider",
    "completed_token",
    "link_and_approve",
    "mint_asset",
    "mint_params",
    "task_status",
]
