"""
Alert Audio

Bell tone synthesis and the platform audio surface.

The bell is three harmonics of an 800 Hz fundamental under an exponential
decay envelope:

    s(t) = 0.3 * exp(-3t) * (sin(2π·800t) + 0.5·sin(2π·1600t) + 0.25·sin(2π·2400t))

rendered for 1.5 s. Rendered to WAV it doubles as the default alert clip
when no pre-built clip is configured.

Backends:
    - MockAudioBackend: records calls, configurable failures (development, tests)
    - SoundDeviceAudioBackend: PortAudio output via sounddevice
"""

import io
import logging
import wave
from abc import ABC, abstractmethod
from typing import Optional

import numpy as np

from order_tracking.core.errors import AudioUnsupported, PlaybackRejected

logger = logging.getLogger(__name__)

BELL_FUNDAMENTAL_HZ = 800.0
BELL_HARMONICS = ((1.0, 1.0), (2.0, 0.5), (3.0, 0.25))
BELL_DURATION_SECONDS = 1.5
BELL_DECAY = 3.0
BELL_GAIN = 0.3


def generate_bell_tone(
    sample_rate: int = 44100,
    duration: float = BELL_DURATION_SECONDS,
    fundamental: float = BELL_FUNDAMENTAL_HZ,
) -> np.ndarray:
    """Render the bell as float32 samples in [-1, 1]."""
    t = np.arange(int(sample_rate * duration), dtype=np.float64) / sample_rate
    tone = np.zeros_like(t)
    for multiple, weight in BELL_HARMONICS:
        tone += weight * np.sin(2 * np.pi * fundamental * multiple * t)
    tone *= np.exp(-BELL_DECAY * t) * BELL_GAIN
    return tone.astype(np.float32)


def encode_wav(samples: np.ndarray, sample_rate: int) -> bytes:
    """Encode mono float samples as 16-bit PCM WAV."""
    pcm = (np.clip(samples, -1.0, 1.0) * 32767).astype("<i2")
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wav:
        wav.setnchannels(1)
        wav.setsampwidth(2)
        wav.setframerate(sample_rate)
        wav.writeframes(pcm.tobytes())
    return buffer.getvalue()


def decode_wav(data: bytes) -> tuple[np.ndarray, int]:
    """Decode 16-bit PCM WAV to float32 samples (frames x channels)."""
    try:
        with wave.open(io.BytesIO(data), "rb") as wav:
            if wav.getsampwidth() != 2:
                raise PlaybackRejected(f"Unsupported WAV sample width: {wav.getsampwidth() * 8} bit")
            channels = wav.getnchannels()
            sample_rate = wav.getframerate()
            frames = wav.readframes(wav.getnframes())
    except (wave.Error, EOFError) as e:
        raise PlaybackRejected(f"Unreadable alert clip: {e}") from e

    samples = np.frombuffer(frames, dtype="<i2").astype(np.float32) / 32767
    return samples.reshape(-1, channels), sample_rate


# =============================================================================
# BACKENDS
# =============================================================================

class BaseAudioBackend(ABC):
    """Platform audio output."""

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    async def play_clip(self, clip: bytes, loop: bool = True) -> None:
        """Start a WAV clip. Raises PlaybackRejected if it cannot start."""
        pass

    @abstractmethod
    async def play_tone(self, samples: np.ndarray, sample_rate: int) -> None:
        """Play synthesized samples once. Raises AudioUnsupported if no synthesis."""
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop anything playing. Never raises."""
        pass


class MockAudioBackend(BaseAudioBackend):
    """Records playback calls instead of making sound."""

    def __init__(self, reject_clip: bool = False, synth_available: bool = True):
        self.reject_clip = reject_clip
        self.synth_available = synth_available
        self.clips_played = 0
        self.tones_played = 0
        self.stops = 0
        self.looping = False

    @property
    def name(self) -> str:
        return "mock"

    async def play_clip(self, clip: bytes, loop: bool = True) -> None:
        if self.reject_clip:
            raise PlaybackRejected("Clip playback rejected (simulated autoplay block)")
        self.clips_played += 1
        self.looping = loop
        logger.debug(f"Mock audio: clip started ({len(clip)} bytes, loop={loop})")

    async def play_tone(self, samples: np.ndarray, sample_rate: int) -> None:
        if not self.synth_available:
            raise AudioUnsupported("Tone synthesis unavailable (simulated)")
        self.tones_played += 1
        logger.debug(f"Mock audio: bell tone ({len(samples) / sample_rate:.1f}s)")

    async def stop(self) -> None:
        self.stops += 1
        self.looping = False


class SoundDeviceAudioBackend(BaseAudioBackend):
    """
    Audio output through sounddevice (PortAudio).

    sounddevice is imported on first use: a host without PortAudio or an
    output device raises AudioUnsupported instead of failing at import.
    """

    def __init__(self, volume: float = 1.0):
        self.volume = volume
        self._sd = None

    @property
    def name(self) -> str:
        return "sounddevice"

    def _device(self):
        if self._sd is None:
            try:
                import sounddevice
            except (ImportError, OSError) as e:
                raise AudioUnsupported(f"No audio output available: {e}") from e
            self._sd = sounddevice
        return self._sd

    async def play_clip(self, clip: bytes, loop: bool = True) -> None:
        try:
            sd = self._device()
        except AudioUnsupported as e:
            raise PlaybackRejected(e.message) from e

        samples, sample_rate = decode_wav(clip)
        try:
            sd.play(samples * self.volume, sample_rate, loop=loop)
        except sd.PortAudioError as e:
            raise PlaybackRejected(f"Clip playback failed: {e}") from e

    async def play_tone(self, samples: np.ndarray, sample_rate: int) -> None:
        sd = self._device()
        try:
            sd.play(samples * self.volume, sample_rate)
        except sd.PortAudioError as e:
            raise AudioUnsupported(f"Tone playback failed: {e}") from e

    async def stop(self) -> None:
        if self._sd is None:
            return
        try:
            self._sd.stop()
        except self._sd.PortAudioError as e:
            logger.warning(f"Audio stop failed: {e}")


def load_clip(path: Optional[str], sample_rate: int) -> bytes:
    """Read the configured clip, or render the bell tone when unset/unreadable."""
    if path:
        try:
            with open(path, "rb") as f:
                return f.read()
        except OSError as e:
            logger.warning(f"Alert clip {path} not readable ({e}), using the bell tone")
    return encode_wav(generate_bell_tone(sample_rate), sample_rate)
