from .models import WordStatus, WordRecord, Contact, ConversationSession
from .interfaces import (
    TextGenerationService, TranscriptionService, SpeechSynthesisService,
    AudioCaptureService, VocabularyRepository, ContactRepository
)
from .utils import tokenize
from .scheduler import SpacedRepetitionScheduler
from .fallback import FallbackPolicy
from .orchestrator import ConversationOrchestrator, ConversationState
from .config import (
    DEFAULT_LANGUAGE, NATIVE_LANGUAGE, MAX_SEVERITY,
    FALLBACK_THRESHOLD, LISTEN_WINDOW_SECONDS, HISTORY_WINDOW
)

__all__ = [
    'WordStatus', 'WordRecord', 'Contact', 'ConversationSession',
    'TextGenerationService', 'TranscriptionService', 'SpeechSynthesisService',
    'AudioCaptureService', 'VocabularyRepository', 'ContactRepository',
    'tokenize',
    'SpacedRepetitionScheduler', 'FallbackPolicy',
    'ConversationOrchestrator', 'ConversationState',
    'DEFAULT_LANGUAGE', 'NATIVE_LANGUAGE', 'MAX_SEVERITY',
    'FALLBACK_THRESHOLD', 'LISTEN_WINDOW_SECONDS', 'HISTORY_WINDOW'
]
