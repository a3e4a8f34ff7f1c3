"""Tests for the pure alert state machine."""

import pytest

from order_tracking.services.alerts.state import AlertEvent, AlertPhase, AlertState, transition

IDLE = AlertState(AlertPhase.IDLE)
PLAYING = AlertState(AlertPhase.PLAYING)
SILENCED = AlertState(AlertPhase.SILENCED)


class TestTransition:

    @pytest.mark.parametrize("state", [IDLE, PLAYING, SILENCED])
    def test_new_notifications_play_when_sound_enabled(self, state):
        assert transition(state, AlertEvent.NEW_NOTIFICATIONS).phase == AlertPhase.PLAYING

    def test_new_notifications_with_sound_off(self):
        silenced = AlertState(AlertPhase.SILENCED, sound_enabled=False)
        idle = AlertState(AlertPhase.IDLE, sound_enabled=False)

        assert transition(silenced, AlertEvent.NEW_NOTIFICATIONS) == idle
        assert transition(idle, AlertEvent.NEW_NOTIFICATIONS) == idle

    @pytest.mark.parametrize("event", [AlertEvent.USER_STOP, AlertEvent.MARK_ALL_READ])
    def test_stop_events_silence(self, event):
        state = transition(PLAYING, event)

        assert state.phase == AlertPhase.SILENCED
        assert state.user_manually_silenced is True
        assert state.is_playing is False

    def test_resume_requires_unread(self):
        assert transition(SILENCED, AlertEvent.USER_RESUME, has_unread=False) == SILENCED
        assert transition(SILENCED, AlertEvent.USER_RESUME, has_unread=True) == PLAYING

    def test_resume_requires_sound(self):
        muted = AlertState(AlertPhase.SILENCED, sound_enabled=False)

        assert transition(muted, AlertEvent.USER_RESUME, has_unread=True) == muted

    def test_resume_while_playing_is_a_no_op(self):
        assert transition(PLAYING, AlertEvent.USER_RESUME, has_unread=True) is PLAYING

    def test_disabling_sound_stops_playing(self):
        state = transition(PLAYING, AlertEvent.SOUND_DISABLED)

        assert state == AlertState(AlertPhase.IDLE, sound_enabled=False)

    def test_disabling_sound_keeps_silence(self):
        state = transition(SILENCED, AlertEvent.SOUND_DISABLED)

        assert state == AlertState(AlertPhase.SILENCED, sound_enabled=False)

    def test_enabling_sound_does_not_start_playing(self):
        muted = AlertState(AlertPhase.IDLE, sound_enabled=False)

        assert transition(muted, AlertEvent.SOUND_ENABLED) == IDLE

    def test_playing_never_ends_on_its_own(self):
        """Only stop, mark-all-read and sound-off leave PLAYING."""
        leaving = {
            event for event in AlertEvent
            if not transition(PLAYING, event, has_unread=True).is_playing
        }

        assert leaving == {AlertEvent.USER_STOP, AlertEvent.MARK_ALL_READ, AlertEvent.SOUND_DISABLED}
