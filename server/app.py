"""FastAPI server for ringback application."""

import asyncio
import logging
import os
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import Response
from pydantic import BaseModel

from core.config import (
    DEFAULT_LANGUAGE, NATIVE_LANGUAGE, LISTEN_WINDOW_SECONDS,
    FALLBACK_THRESHOLD, FALLBACK_STICKY
)
from core.fallback import FallbackPolicy
from core.models import WordStatus
from core.orchestrator import ConversationOrchestrator, ConversationState
from core.scheduler import SpacedRepetitionScheduler

from server.file_storage import FileVocabularyRepository, FileContactRepository, load_config
from server.gemini_provider import GeminiProvider
from server.postgres_storage import (
    PostgresConnection, PostgresVocabularyRepository, PostgresContactRepository
)
from server.speech import QueuedSpeechOutput, UploadedAudioCapture
from server.transcription import WhisperTranscriber, PlainTextTranscriber

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


# Pydantic models for API
class StartCallRequest(BaseModel):
    contact_id: str


class PracticeRequest(BaseModel):
    text: str
    language: str = DEFAULT_LANGUAGE


class ContactResponse(BaseModel):
    id: str
    name: str
    language: str
    personality: str
    voice: Optional[str]
    birthday: Optional[str]
    last_call_time: Optional[str]


class CallStatusResponse(BaseModel):
    state: str
    active: bool
    listening: bool
    escalated: bool
    contact: Optional[ContactResponse]
    consecutive_failures: int
    history: list[dict]
    word_statuses: dict
    spoken: list[dict]
    next_index: int


class DueWordsResponse(BaseModel):
    language: str
    total: int
    words: list[str]


# Global state, wired on startup
config: dict = {}
vocabulary = None
contacts = None
scheduler: SpacedRepetitionScheduler = None
speaker: QueuedSpeechOutput = None
capture: UploadedAudioCapture = None
orchestrator: ConversationOrchestrator = None
generator: GeminiProvider = None


app = FastAPI(title="Ringback API", description="Conversational vocabulary practice API")


def build_transcriber(settings: dict):
    """faster-whisper for real audio; plain text for typed console calls."""
    kind = os.environ.get('RINGBACK_TRANSCRIBER', settings.get('transcriber', 'text'))
    if kind == 'whisper':
        model = settings.get('whisper_model', 'small')
        logger.info(f"Using faster-whisper transcription ({model})")
        return WhisperTranscriber(model=model)
    logger.info("Using plain text transcription")
    return PlainTextTranscriber()


@app.on_event("startup")
async def startup():
    """Initialize storage, services and the call orchestrator on startup."""
    global config, vocabulary, contacts, scheduler, speaker, capture, orchestrator, generator

    config = load_config()

    # Use PostgreSQL by default, set RINGBACK_STORAGE=file to use file storage
    storage_type = os.environ.get('RINGBACK_STORAGE', 'postgres')
    if storage_type == 'file':
        vocabulary = FileVocabularyRepository()
        contacts = FileContactRepository()
        logger.info("Using file storage")
    else:
        db = PostgresConnection()
        vocabulary = PostgresVocabularyRepository(db)
        contacts = PostgresContactRepository(db)
        logger.info("Using PostgreSQL storage")

    # Get API key from environment variable first, then fall back to config file
    api_key = os.environ.get('GEMINI_API_KEY') or config.get('gemini_api_key')
    if not api_key:
        raise RuntimeError(
            "GEMINI_API_KEY environment variable not set and config file not found. "
            "Set GEMINI_API_KEY or create ~/.config/ringback/config.json"
        )

    scheduler = SpacedRepetitionScheduler(vocabulary)
    generator = GeminiProvider(api_key, model_name=config.get('gemini_model', 'gemini-2.0-flash'))
    speaker = QueuedSpeechOutput(render_audio=config.get('render_audio', True))
    capture = UploadedAudioCapture()
    orchestrator = ConversationOrchestrator(
        scheduler=scheduler,
        fallback_policy=FallbackPolicy(
            threshold=config.get('fallback_threshold', FALLBACK_THRESHOLD),
            sticky=config.get('fallback_sticky', FALLBACK_STICKY)
        ),
        generator=generator,
        transcriber=build_transcriber(config),
        speaker=speaker,
        capture=capture,
        contacts=contacts,
        native_language=config.get('native_language', NATIVE_LANGUAGE),
        listen_window_seconds=float(config.get('listen_window_seconds', LISTEN_WINDOW_SECONDS))
    )
    logger.info("Call orchestrator ready")


@app.on_event("shutdown")
async def shutdown():
    """Hang up and flush vocabulary before exiting."""
    if orchestrator is None:
        return
    orchestrator.end_conversation()
    await orchestrator.wait_closed()
    await orchestrator.flush_pending_writes()
    await save_vocabulary()


@app.get("/")
async def root():
    """Health check."""
    return {"status": "ok", "call_active": orchestrator.is_active if orchestrator else False}


# Contacts
@app.get("/api/contacts", response_model=list[ContactResponse])
async def list_contacts(language: str = None):
    """List contacts the learner can call."""
    return [ContactResponse(**c.to_dict()) for c in contacts.list_contacts(language)]


# Call endpoints
@app.post("/api/call/start", response_model=CallStatusResponse)
async def start_call(request: StartCallRequest):
    """Call a contact. Any call already in progress is ended first."""
    contact = contacts.get_contact(request.contact_id)
    if contact is None:
        raise HTTPException(status_code=404, detail=f"Unknown contact: {request.contact_id}")
    since = speaker.next_index
    await orchestrator.start_conversation(contact)
    return build_call_status(since=since)


@app.post("/api/call/end", response_model=CallStatusResponse)
async def end_call():
    """Hang up. Does nothing if no call is active."""
    orchestrator.end_conversation()
    await orchestrator.wait_closed()
    return build_call_status()


@app.get("/api/call/status", response_model=CallStatusResponse)
async def call_status(since: int = 0):
    """Current call state plus lines spoken since the given index."""
    return build_call_status(since=since)


@app.post("/api/call/audio")
async def upload_audio(request: Request):
    """Feed utterance audio (or UTF-8 text in text mode) into the listening window."""
    data = await request.body()
    if not orchestrator.is_active:
        raise HTTPException(status_code=409, detail="No call in progress")
    if not capture.feed(data):
        raise HTTPException(status_code=409, detail="Not listening right now")
    return {"accepted": len(data)}


@app.get("/api/call/speech/{index}")
async def get_speech(index: int):
    """MP3 audio for a spoken line."""
    line = speaker.get_line(index)
    if line is None or line.audio is None:
        raise HTTPException(status_code=404, detail=f"No audio for line {index}")
    return Response(content=line.audio, media_type="audio/mpeg")


def build_call_status(since: int = 0) -> CallStatusResponse:
    status = orchestrator.status()
    session = status['session']
    contact = ContactResponse(**session['contact']) if session else None
    return CallStatusResponse(
        state=status['state'],
        active=status['active'],
        listening=orchestrator.state == ConversationState.LISTENING and capture.listening,
        escalated=status['escalated'],
        contact=contact,
        consecutive_failures=session['consecutive_failures'] if session else 0,
        history=session['history'] if session else [],
        word_statuses=status['word_statuses'],
        spoken=[line.to_dict() for line in speaker.lines_since(since)],
        next_index=speaker.next_index
    )


# Vocabulary endpoints
async def run_blocking(fn, *args):
    """Run a blocking repository call in the default executor."""
    loop = asyncio.get_event_loop()
    return await loop.run_in_executor(None, lambda: fn(*args))


async def save_vocabulary() -> None:
    try:
        await run_blocking(vocabulary.save)
    except Exception as e:
        logger.error(f"Failed to save vocabulary: {e}")


@app.post("/api/vocabulary/practice")
async def practice(request: PracticeRequest):
    """Run a typed utterance through the scheduler outside of a call."""
    statuses = await run_blocking(scheduler.process_utterance, request.text, request.language)
    await save_vocabulary()
    return {
        "language": request.language,
        "words": {word: status.to_dict() for word, status in statuses.items()}
    }


@app.get("/api/vocabulary/due", response_model=DueWordsResponse)
async def due_words(language: str = DEFAULT_LANGUAGE, limit: int = 50):
    """Words due for review, earliest first."""
    words = await run_blocking(scheduler.due_words, language)
    return DueWordsResponse(language=language, total=len(words), words=words[:limit])


@app.get("/api/vocabulary/words")
async def words_by_status(language: str = DEFAULT_LANGUAGE, status: str = WordStatus.STRUGGLING):
    """Words of a language in the given status (proficient or struggling)."""
    if status not in (WordStatus.PROFICIENT, WordStatus.STRUGGLING):
        raise HTTPException(status_code=400, detail=f"Unknown status: {status}")
    words = sorted(await run_blocking(vocabulary.find_all_by_status, language, status))
    return {"language": language, "status": status, "total": len(words), "words": words}


@app.get("/api/stats")
async def get_api_stats():
    """Gemini usage statistics."""
    if generator is None:
        return {}
    return generator.get_stats()


def create_app():
    """Factory function for creating the app (useful for testing)."""
    return app
