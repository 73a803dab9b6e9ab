"""Abstract base classes for dependency injection."""

from abc import ABC, abstractmethod
from datetime import datetime


class TextGenerationService(ABC):
    """Abstract base class for the text generation model."""

    @abstractmethod
    async def generate(self, prompt: str, language: str) -> str | None:
        """Generate text in the given language. Returns None on failure."""
        pass


class TranscriptionService(ABC):
    """Abstract base class for speech-to-text."""

    @abstractmethod
    async def transcribe(self, audio: bytes) -> str | None:
        """Transcribe a complete utterance. Returns None or '' when nothing was understood."""
        pass


class SpeechSynthesisService(ABC):
    """Abstract base class for text-to-speech output."""

    @abstractmethod
    async def speak(self, text: str, language: str) -> bool:
        """Speak text and wait until playback completes. Returns False on failure."""
        pass

    @abstractmethod
    def stop_immediately(self) -> None:
        """Interrupt whatever is currently playing."""
        pass


class AudioCaptureService(ABC):
    """Abstract base class for the microphone."""

    @abstractmethod
    async def start(self):
        """Start capturing. Returns an opaque handle, raises if the device is unavailable."""
        pass

    @abstractmethod
    async def stop(self, handle) -> bytes:
        """Stop capturing and return the recorded buffer."""
        pass

    @abstractmethod
    def discard(self, handle) -> None:
        """Release the device and drop any partial audio. Safe to call twice."""
        pass


class VocabularyRepository(ABC):
    """Abstract base class for per-word scheduling state."""

    @abstractmethod
    def find(self, word: str, language: str):
        """Get the WordRecord for (word, language) or None."""
        pass

    @abstractmethod
    def find_all_by_status(self, language: str, status: str) -> set[str]:
        """Get the words of a language currently in the given status kind."""
        pass

    @abstractmethod
    def upsert(self, record) -> None:
        """Insert or replace a WordRecord."""
        pass

    @abstractmethod
    def due_before(self, language: str, timestamp: datetime) -> list:
        """Get WordRecords with next_review <= timestamp, earliest first."""
        pass

    @abstractmethod
    def save(self) -> None:
        """Make pending changes durable. May be slow; callers schedule it off the turn loop."""
        pass


class ContactRepository(ABC):
    """Abstract base class for contacts."""

    @abstractmethod
    def get_contact(self, contact_id: str):
        """Get a Contact by id or None."""
        pass

    @abstractmethod
    def list_contacts(self, language: str = None) -> list:
        """List contacts, optionally filtered by language."""
        pass

    @abstractmethod
    def save_contact(self, contact) -> None:
        """Insert or replace a Contact."""
        pass

    @abstractmethod
    def update_last_call_time(self, contact_id: str, when: datetime) -> None:
        """Record when the contact was last called."""
        pass
