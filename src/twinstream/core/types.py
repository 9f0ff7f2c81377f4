"""Shared types and enumerations."""

from __future__ import annotations

from enum import StrEnum


class Provider(StrEnum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"


class Slot(StrEnum):
    A = "A"
    B = "B"


class EventType(StrEnum):
    START = "start"
    TOKEN = "token"
    COMPLETE = "complete"
    ERROR = "error"


class SlotPhase(StrEnum):
    IDLE = "idle"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
