"""
Exception hierarchy for the tabletop engine.

Engine modules raise these; the MCP tool layer catches ``EngineError``
and turns it into a readable error string for the caller.
"""

from __future__ import annotations

from typing import Any


class EngineError(Exception):
    """Base exception for all engine errors.

    Attributes:
        message: Human-readable error message
        details: Optional dictionary of additional error context
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class EncounterNotFoundError(EngineError):
    """Raised when an encounter ID does not resolve to a stored encounter."""

    def __init__(self, encounter_id: str):
        super().__init__(
            f"Encounter '{encounter_id}' not found",
            details={"encounter_id": encounter_id},
        )
        self.encounter_id = encounter_id


class ParticipantNotFoundError(EngineError):
    """Raised when a participant ID is not part of the encounter."""

    def __init__(self, participant_id: str, encounter_id: str | None = None):
        super().__init__(
            f"Participant '{participant_id}' not found",
            details={"participant_id": participant_id, "encounter_id": encounter_id},
        )
        self.participant_id = participant_id


class InvalidActionError(EngineError):
    """An action that the current encounter state does not allow."""


class TurnOrderError(InvalidActionError):
    """An action taken out of turn (e.g. a lair action outside the LAIR slot)."""


class MovementError(InvalidActionError):
    """A move rejected by the grid.

    Attributes:
        errors: Every validation failure collected for the move
    """

    def __init__(self, errors: list[str], details: dict[str, Any] | None = None):
        super().__init__("; ".join(errors), details=details)
        self.errors = errors


class DiceNotationError(EngineError, ValueError):
    """Raised for dice expressions that cannot be parsed."""

    def __init__(self, notation: str):
        super().__init__(
            f"Invalid dice notation: {notation!r}",
            details={"notation": notation},
        )
        self.notation = notation


class SpellNotFoundError(EngineError):
    """Raised when a spell name is not in the catalogue."""

    def __init__(self, spell_name: str):
        super().__init__(
            f"Unknown spell: {spell_name}",
            details={"spell_name": spell_name},
        )
        self.spell_name = spell_name


class StorageError(EngineError):
    """Persistence failures (unreadable or corrupt encounter files)."""
