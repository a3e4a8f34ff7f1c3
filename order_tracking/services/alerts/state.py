"""
Alert state machine.

    IDLE ──new──▶ PLAYING ──stop / mark-all-read──▶ SILENCED
      ▲             │                                  │
      └─sound off───┘◀──────────new / resume───────────┘

``transition`` is pure: it takes a state and an event and returns the next
state. Side effects (starting/stopping audio) belong to the engine, which
compares the phase before and after.

``is_playing`` only goes from True to False through an explicit event
(user stop, mark-all-read, or sound being disabled), never on its own.
"""

from dataclasses import dataclass, replace
from enum import Enum


class AlertPhase(str, Enum):
    IDLE = "idle"
    PLAYING = "playing"
    SILENCED = "silenced"


class AlertEvent(str, Enum):
    NEW_NOTIFICATIONS = "new_notifications"
    USER_STOP = "user_stop"
    MARK_ALL_READ = "mark_all_read"
    USER_RESUME = "user_resume"
    SOUND_DISABLED = "sound_disabled"
    SOUND_ENABLED = "sound_enabled"


@dataclass(frozen=True)
class AlertState:
    phase: AlertPhase = AlertPhase.IDLE
    sound_enabled: bool = True

    @property
    def is_playing(self) -> bool:
        return self.phase == AlertPhase.PLAYING

    @property
    def user_manually_silenced(self) -> bool:
        return self.phase == AlertPhase.SILENCED


def transition(state: AlertState, event: AlertEvent, has_unread: bool = False) -> AlertState:
    """
    Next alert state.

    Args:
        state: Current state
        event: What happened
        has_unread: Whether unread notifications exist (guards USER_RESUME)
    """
    if event == AlertEvent.NEW_NOTIFICATIONS:
        # A genuinely new notification lifts a manual silence
        if not state.sound_enabled:
            return replace(state, phase=AlertPhase.IDLE) if state.user_manually_silenced else state
        return replace(state, phase=AlertPhase.PLAYING)

    if event in (AlertEvent.USER_STOP, AlertEvent.MARK_ALL_READ):
        return replace(state, phase=AlertPhase.SILENCED)

    if event == AlertEvent.USER_RESUME:
        if state.sound_enabled and has_unread and not state.is_playing:
            return replace(state, phase=AlertPhase.PLAYING)
        return state

    if event == AlertEvent.SOUND_DISABLED:
        phase = AlertPhase.IDLE if state.is_playing else state.phase
        return replace(state, phase=phase, sound_enabled=False)

    if event == AlertEvent.SOUND_ENABLED:
        return replace(state, sound_enabled=True)

    raise ValueError(f"Unknown alert event: {event!r}")
