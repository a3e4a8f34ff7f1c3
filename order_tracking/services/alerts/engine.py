"""
Alert Delivery Engine

Turns "new unread notification" deltas into an audible and visual alert.

Trigger (evaluated on every unread delta):

    new_count > previously_seen AND sound_enabled AND NOT playing AND NOT silenced

``previously_seen`` is the number of distinct notification ids this engine
has seen, and ``new_count`` the same number after folding in the delivered
set. Re-delivering known ids (push and poll racing, a poll after
mark-all-read) therefore never re-triggers. A genuinely new id lifts a
manual silence before the condition is evaluated.

Playback fallback chain:
    1. CLIP:  pre-built clip, looped
    2. BELL:  synthesized bell, repeated every ``bell_interval`` seconds
    3. BADGE: visual badge only, with an audio error on the board

Playing only stops through ``stop()`` (user action or mark-all-read) or
by disabling sound.
"""

import logging
from enum import Enum
from typing import Callable, Iterable, Optional

from order_tracking.core.errors import (
    AudioUnsupported,
    ErrorKind,
    PipelineError,
    PipelineErrors,
    PlaybackRejected,
)
from order_tracking.core.scheduling import BaseScheduler, TaskTracker, TimerHandle
from order_tracking.schemas import Notification
from order_tracking.services.alerts.audio import BaseAudioBackend, generate_bell_tone
from order_tracking.services.alerts.state import AlertEvent, AlertState, transition

logger = logging.getLogger(__name__)


class PlaybackMode(str, Enum):
    NONE = "none"
    CLIP = "clip"
    BELL = "bell"
    BADGE = "badge"


class AlertEngine:
    """
    Alert state and playback for one session.

    Args:
        audio: Platform audio backend
        scheduler: Clock for the bell repeat interval
        errors: Session error board (audio errors)
        clip: WAV bytes looped at level 1 of the fallback chain
        bell_interval: Seconds between bell repeats at level 2
        sound_enabled: Initial sound setting
        on_alert: Called with the newest fresh notification when an alert fires
    """

    def __init__(
        self,
        audio: BaseAudioBackend,
        scheduler: BaseScheduler,
        errors: PipelineErrors,
        clip: bytes,
        bell_interval: float = 2.0,
        sample_rate: int = 44100,
        sound_enabled: bool = True,
        on_alert: Optional[Callable[[Notification], None]] = None,
    ):
        self.audio = audio
        self.scheduler = scheduler
        self.errors = errors
        self.clip = clip
        self.bell_interval = bell_interval
        self.sample_rate = sample_rate
        self.tone = generate_bell_tone(sample_rate)
        self.on_alert = on_alert

        self.state = AlertState(sound_enabled=sound_enabled)
        self.playback_mode = PlaybackMode.NONE
        self.seen_ids: set[str] = set()
        self.alerts_fired = 0
        self.tasks = TaskTracker("alerts")

        self._generation = 0
        self._bell_handle: Optional[TimerHandle] = None
        self._closed = False

    @property
    def is_playing(self) -> bool:
        return self.state.is_playing

    def snapshot(self) -> dict:
        return {
            "phase": self.state.phase.value,
            "is_playing": self.state.is_playing,
            "is_sound_enabled": self.state.sound_enabled,
            "user_manually_silenced": self.state.user_manually_silenced,
            "playback_mode": self.playback_mode.value,
        }

    # =========================================================================
    # TRIGGER
    # =========================================================================

    def notify_unread(self, unread: Iterable[Notification]) -> bool:
        """
        Fold an unread delta into the seen set and fire if it qualifies.

        Returns True if this call started an alert.
        """
        if self._closed:
            return False

        unread = list(unread)
        previously_seen = len(self.seen_ids)
        fresh = [n for n in unread if n.id not in self.seen_ids]
        self.seen_ids.update(n.id for n in unread)
        if len(self.seen_ids) <= previously_seen:
            return False

        before = self.state
        self.state = transition(before, AlertEvent.NEW_NOTIFICATIONS)
        if self.state.is_playing and not before.is_playing:
            self.alerts_fired += 1
            logger.info(f"🔔 Alert: {len(fresh)} new notification(s)")
            self._start_playback()
            if self.on_alert is not None:
                self.on_alert(fresh[0])
            return True

        logger.debug(
            f"{len(fresh)} new notification(s), no alert "
            f"(phase={self.state.phase.value}, sound={self.state.sound_enabled})"
        )
        return False

    # =========================================================================
    # USER OPERATIONS
    # =========================================================================

    async def stop(self, event: AlertEvent = AlertEvent.USER_STOP) -> None:
        """Halt playback and silence until the next new notification."""
        before = self.state
        self.state = transition(before, event)
        self._halt()
        if before.is_playing:
            logger.info(f"🔕 Alert stopped ({event.value})")
        await self.audio.stop()

    async def resume(self, has_unread: bool) -> bool:
        """Restart the alert after a manual stop. Returns True if it started."""
        before = self.state
        self.state = transition(before, AlertEvent.USER_RESUME, has_unread=has_unread)
        if self.state.is_playing and not before.is_playing:
            logger.info("🔔 Alert resumed by user")
            self._start_playback()
            return True
        return False

    async def ensure_playing(self) -> bool:
        """
        Restart playback of an alert that is already on but not audible.

        Never leaves IDLE or SILENCED. Returns True if playback was restarted.
        """
        if self._closed or not self.state.is_playing:
            return False
        if self.playback_mode in (PlaybackMode.CLIP, PlaybackMode.BELL):
            return False
        logger.info("🔔 Restarting alert playback")
        self._start_playback()
        return True

    async def set_sound_enabled(self, enabled: bool) -> None:
        before = self.state
        self.state = transition(before, AlertEvent.SOUND_ENABLED if enabled else AlertEvent.SOUND_DISABLED)
        if before.is_playing and not self.state.is_playing:
            self._halt()
            await self.audio.stop()
        logger.info(f"Alert sound {'enabled' if enabled else 'disabled'}")

    async def close(self) -> None:
        self._closed = True
        self._halt()
        await self.tasks.close()
        await self.audio.stop()

    # =========================================================================
    # PLAYBACK
    # =========================================================================

    def _live(self, generation: int) -> bool:
        return not self._closed and generation == self._generation and self.state.is_playing

    def _halt(self) -> None:
        self._generation += 1
        if self._bell_handle is not None:
            self._bell_handle.cancel()
            self._bell_handle = None
        self.playback_mode = PlaybackMode.NONE

    def _start_playback(self) -> None:
        self._halt()
        self.tasks.spawn(self._play(self._generation))

    async def _play(self, generation: int) -> None:
        try:
            await self.audio.play_clip(self.clip, loop=True)
        except PlaybackRejected as e:
            logger.info(f"Clip rejected ({e.message}), falling back to the bell tone")
        else:
            if self._live(generation):
                self.playback_mode = PlaybackMode.CLIP
                self.errors.clear(ErrorKind.AUDIO)
            else:
                await self.audio.stop()
            return

        if not await self._ring(generation):
            return
        if self._live(generation):
            self.playback_mode = PlaybackMode.BELL
            self.errors.clear(ErrorKind.AUDIO)
            self._bell_handle = self.scheduler.call_every(
                self.bell_interval, lambda: self.tasks.spawn(self._ring(generation))
            )

    async def _ring(self, generation: int) -> bool:
        if not self._live(generation):
            return False
        try:
            await self.audio.play_tone(self.tone, self.sample_rate)
            return True
        except AudioUnsupported as e:
            if self._live(generation):
                self._show_badge(e)
            return False

    def _show_badge(self, error: AudioUnsupported) -> None:
        if self._bell_handle is not None:
            self._bell_handle.cancel()
            self._bell_handle = None
        self.playback_mode = PlaybackMode.BADGE
        self.errors.report(PipelineError(
            kind=ErrorKind.AUDIO,
            message=f"Sound unavailable ({error.message}), showing the alert badge only",
        ))
