"""Adapters package - bridges between the turn engine and frontends.

Event bus, typed events, the rich console presenter, and the on-disk
permission rule store.
"""
from __future__ import annotations

__all__ = [
    "ConsolePresenter",
    "EventBus",
    "PermissionRuleStore",
]

from steward.adapters.console import ConsolePresenter
from steward.adapters.event_bus import EventBus
from steward.adapters.permission_store import PermissionRuleStore
