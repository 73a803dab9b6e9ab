"""Speech output and audio capture for clients talking to the server over HTTP.

The server has no speaker or microphone of its own. Spoken lines are rendered
to MP3 with gTTS and queued for clients to fetch. Audio is captured from
whatever a client uploads while the call is listening.
"""

import asyncio
import io
import logging

from gtts import gTTS

from core.config import SECONDS_PER_SPOKEN_WORD
from core.interfaces import SpeechSynthesisService, AudioCaptureService
from core.models import utcnow
from core.utils import estimate_speech_seconds

logger = logging.getLogger(__name__)

MAX_QUEUED_LINES = 200
MAX_UTTERANCE_BYTES = 16000 * 2 * 30  # 30s of 16 kHz PCM16


def gtts_language(code: str) -> str:
    # 'es-MX' -> 'es'
    return code.split('-')[0].lower() if code else 'en'


class SpokenLine:
    """One line the call partner said."""

    def __init__(self, index: int, text: str, language: str):
        self.index = index
        self.text = text
        self.language = language
        self.audio = None
        self.interrupted = False
        self.spoken_at = utcnow()

    def to_dict(self) -> dict:
        return {
            'index': self.index,
            'text': self.text,
            'language': self.language,
            'has_audio': self.audio is not None,
            'interrupted': self.interrupted,
            'spoken_at': self.spoken_at.isoformat()
        }


class QueuedSpeechOutput(SpeechSynthesisService):
    """Queues rendered speech and holds each line for its estimated playback time."""

    def __init__(self, seconds_per_word: float = SECONDS_PER_SPOKEN_WORD,
                 render_audio: bool = True, max_lines: int = MAX_QUEUED_LINES):
        self.seconds_per_word = seconds_per_word
        self.render_audio = render_audio
        self.max_lines = max_lines
        self.lines = []
        self._next_index = 0
        self._current = None
        self._stopped = None

    def _render(self, text: str, language: str) -> bytes:
        """Blocking gTTS call."""
        buffer = io.BytesIO()
        gTTS(text=text, lang=gtts_language(language)).write_to_fp(buffer)
        return buffer.getvalue()

    async def speak(self, text: str, language: str) -> bool:
        line = SpokenLine(self._next_index, text, language)
        if self.render_audio:
            try:
                loop = asyncio.get_event_loop()
                line.audio = await loop.run_in_executor(None, lambda: self._render(text, language))
            except Exception as e:
                logger.warning(f"gTTS failed for {language}: {e}")
                return False

        self._next_index += 1
        self.lines.append(line)
        if len(self.lines) > self.max_lines:
            self.lines = self.lines[-self.max_lines:]

        stopped = asyncio.Event()
        self._current, self._stopped = line, stopped
        try:
            await asyncio.wait_for(stopped.wait(),
                                   timeout=estimate_speech_seconds(text, self.seconds_per_word))
        except asyncio.TimeoutError:
            pass
        finally:
            if self._current is line:
                self._current, self._stopped = None, None
        return not line.interrupted

    @property
    def next_index(self) -> int:
        return self._next_index

    def stop_immediately(self) -> None:
        if self._current is None:
            return
        self._current.interrupted = True
        self._stopped.set()
        self._current, self._stopped = None, None

    def lines_since(self, index: int) -> list[SpokenLine]:
        return [line for line in self.lines if line.index >= index]

    def get_line(self, index: int) -> SpokenLine | None:
        for line in self.lines:
            if line.index == index:
                return line
        return None


class UploadedAudioCapture(AudioCaptureService):
    """Collects audio uploaded by the client during a listening window."""

    def __init__(self, max_bytes: int = MAX_UTTERANCE_BYTES):
        self.max_bytes = max_bytes
        self._handle = None
        self._buffer = bytearray()
        self._counter = 0

    @property
    def listening(self) -> bool:
        return self._handle is not None

    async def start(self):
        if self._handle is not None:
            raise RuntimeError("Audio capture is already in use")
        self._counter += 1
        self._handle = self._counter
        self._buffer = bytearray()
        return self._handle

    def feed(self, data: bytes) -> bool:
        """Append uploaded audio. Returns False when nobody is listening."""
        if self._handle is None:
            return False
        room = self.max_bytes - len(self._buffer)
        if room <= 0:
            logger.warning("Utterance buffer full, dropping audio")
            return True
        self._buffer.extend(data[:room])
        return True

    async def stop(self, handle) -> bytes:
        if handle != self._handle:
            raise RuntimeError("Audio capture handle is no longer valid")
        data = bytes(self._buffer)
        self._release()
        return data

    def discard(self, handle) -> None:
        if handle == self._handle:
            self._release()

    def _release(self) -> None:
        self._handle = None
        self._buffer = bytearray()
