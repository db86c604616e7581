"""Conversational flows driven by ``FlowRouter``."""
from __future__ import annotations

from .base import FlowController, FlowServices
from .creation import EventCreationFlow
from .editing import EventEditFlow
from .registration import GroupRegistrationFlow
from .renaming import RenameFlow
from .resolution import EventResolutionFlow

__all__ = [
    "EventCreationFlow",
    "EventEditFlow",
    "EventResolutionFlow",
    "FlowController",
    "FlowServices",
    "GroupRegistrationFlow",
    "RenameFlow",
]
