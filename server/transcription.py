"""Speech-to-text adapters."""

import asyncio
import logging

import numpy as np
from faster_whisper import WhisperModel

from core.interfaces import TranscriptionService

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "small"
DEVICE = "cpu"
COMPUTE_TYPE = "int8"


def pcm16_to_float32(audio: bytes) -> np.ndarray:
    """Convert 16-bit little-endian mono PCM to float32 samples in [-1, 1]."""
    usable = len(audio) - (len(audio) % 2)
    samples = np.frombuffer(audio[:usable], dtype='<i2')
    return samples.astype(np.float32) / 32768.0


class WhisperTranscriber(TranscriptionService):
    """faster-whisper transcription of 16 kHz PCM16 utterances."""

    def __init__(self,
                 model: str = DEFAULT_MODEL,
                 device: str = DEVICE,
                 compute_type: str = COMPUTE_TYPE,
                 language: str = None):
        self._model = WhisperModel(model, device=device, compute_type=compute_type)
        self.language = language

    def _recognize(self, samples: np.ndarray) -> str:
        segments, info = self._model.transcribe(samples, language=self.language,
                                                word_timestamps=False)
        text = ' '.join(seg.text.strip() for seg in segments)
        logger.debug(f"Transcribed {len(samples)} samples as {info.language}: {text!r}")
        return text.strip()

    async def transcribe(self, audio: bytes) -> str | None:
        if not audio:
            return None
        samples = pcm16_to_float32(audio)
        if samples.size == 0:
            return None
        try:
            loop = asyncio.get_event_loop()
            return await loop.run_in_executor(None, lambda: self._recognize(samples))
        except Exception as e:
            logger.warning(f"Whisper transcription failed: {e}")
            return None


class PlainTextTranscriber(TranscriptionService):
    """Treats the captured buffer as UTF-8 text, for typed console calls."""

    async def transcribe(self, audio: bytes) -> str | None:
        if not audio:
            return None
        return audio.decode('utf-8', errors='ignore').strip() or None
