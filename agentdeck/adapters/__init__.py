"""Adapters package - bridge between the engine and the panel front end.

Contains the session orchestrator, the UI multiplexer and its asset
loader, and the event bus the host server streams from.
"""
from __future__ import annotations

__all__ = [
    "AssetLoader",
    "EventBus",
    "SessionOrchestrator",
    "UIMultiplexer",
]

from agentdeck.adapters.assets import AssetLoader
from agentdeck.adapters.event_bus import EventBus
from agentdeck.adapters.orchestrator import SessionOrchestrator
from agentdeck.adapters.ui_multiplexer import UIMultiplexer
