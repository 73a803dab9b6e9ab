"""Turn-taking state machine for a live practice call.

One call runs as one asyncio task. Each turn awaits its phases in order
(speak, listen, transcribe, generate, speak) and re-checks that the session
is still the live one after every suspension point, so ``end_conversation``
can be called from outside the task at any moment.
"""

import asyncio
import logging
from enum import Enum

from .config import (
    NATIVE_LANGUAGE, LISTEN_WINDOW_SECONDS, FALLBACK_RESUME_DELAY,
    HISTORY_WINDOW, REVIEW_WORDS_IN_PROMPT,
    GENERIC_GREETING, CLARIFY_TARGET, CLARIFY_NATIVE
)
from .fallback import FallbackPolicy
from .interfaces import (
    TextGenerationService, TranscriptionService, SpeechSynthesisService,
    AudioCaptureService, ContactRepository
)
from .models import Contact, ConversationSession, utcnow
from .prompts import build_ringing_prompt, build_reply_prompt
from .scheduler import SpacedRepetitionScheduler

logger = logging.getLogger(__name__)


class ConversationState(Enum):
    IDLE = 'idle'
    RINGING = 'ringing'
    SPEAKING_INTRO = 'speaking_intro'
    LISTENING = 'listening'
    INTERPRETING = 'interpreting'
    SPEAKING_RESPONSE = 'speaking_response'
    ENDED = 'ended'


class SessionEnded(Exception):
    """The session a call task was driving is no longer the live one."""


class ConversationOrchestrator:
    """Runs at most one call at a time against injected services."""

    def __init__(self, scheduler: SpacedRepetitionScheduler,
                 fallback_policy: FallbackPolicy,
                 generator: TextGenerationService,
                 transcriber: TranscriptionService,
                 speaker: SpeechSynthesisService,
                 capture: AudioCaptureService,
                 contacts: ContactRepository = None,
                 native_language: str = NATIVE_LANGUAGE,
                 listen_window_seconds: float = LISTEN_WINDOW_SECONDS,
                 fallback_resume_delay: float = FALLBACK_RESUME_DELAY,
                 history_window: int = HISTORY_WINDOW,
                 now_fn=None):
        self.scheduler = scheduler
        self.fallback_policy = fallback_policy
        self.generator = generator
        self.transcriber = transcriber
        self.speaker = speaker
        self.capture = capture
        self.contacts = contacts
        self.native_language = native_language
        self.listen_window_seconds = listen_window_seconds
        self.fallback_resume_delay = fallback_resume_delay
        self.history_window = history_window
        self.now_fn = now_fn or utcnow

        self.state = ConversationState.IDLE
        self.session = None
        self.last_word_statuses = {}
        self._task = None
        self._capture_handle = None
        self._pending_writes = set()

    @property
    def is_active(self) -> bool:
        return self.session is not None and self.session.active

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start_conversation(self, contact: Contact) -> ConversationSession:
        """Start a call, tearing down any call already in progress."""
        if self.session is not None:
            logger.info(f"Ending call with {self.session.contact.name} before calling {contact.name}")
            previous = self._task
            self.end_conversation()
            if previous is not None:
                await asyncio.wait([previous])

        self.fallback_policy.reset()
        session = ConversationSession(contact, history_window=self.history_window)
        self.session = session
        self.last_word_statuses = {}
        self.state = ConversationState.RINGING
        logger.info(f"Calling {contact.name} ({contact.language})")
        self._task = asyncio.create_task(self._run(session))
        return session

    def end_conversation(self) -> None:
        """Hang up. Safe to call at any time, including when no call is active."""
        session = self.session
        if session is None:
            return

        handle, self._capture_handle = self._capture_handle, None
        if handle is not None:
            try:
                self.capture.discard(handle)
            except Exception as e:
                logger.error(f"Failed to release audio capture: {e}")

        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

        try:
            self.speaker.stop_immediately()
        except Exception as e:
            logger.error(f"Failed to stop speech output: {e}")

        self.fallback_policy.reset()
        session.active = False
        session.consecutive_failures = 0
        self.session = None
        self.state = ConversationState.ENDED
        logger.info(f"Call with {session.contact.name} ended")

    async def wait_closed(self) -> None:
        """Wait for the current or last call task to finish unwinding."""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    def status(self) -> dict:
        return {
            'state': self.state.value,
            'active': self.is_active,
            'session': self.session.to_dict() if self.session else None,
            'escalated': self.fallback_policy.escalated,
            'word_statuses': {w: s.to_dict() for w, s in self.last_word_statuses.items()}
        }

    # ------------------------------------------------------------------
    # Turn loop
    # ------------------------------------------------------------------

    def _check(self, session: ConversationSession) -> None:
        if self.session is not session or not session.active:
            raise SessionEnded()

    def _transition(self, session: ConversationSession, state: ConversationState) -> None:
        self._check(session)
        logger.debug(f"{self.state.value} -> {state.value}")
        self.state = state

    async def _run(self, session: ConversationSession) -> None:
        try:
            await self._ring(session)
            while True:
                await self._take_turn(session)
        except SessionEnded:
            logger.debug("Call task unwound after hang-up")
        except asyncio.CancelledError:
            logger.debug("Call task cancelled")
            raise
        except Exception as e:
            logger.error(f"Call with {session.contact.name} failed: {type(e).__name__}: {e}")
            if self.session is session:
                self.end_conversation()

    async def _ring(self, session: ConversationSession) -> None:
        contact = session.contact
        now = self.now_fn()
        intro = await self._generate(build_ringing_prompt(contact, now), contact.language)
        if not intro:
            logger.info("Ringing narrative unavailable, using generic greeting")
            intro = GENERIC_GREETING

        self._transition(session, ConversationState.SPEAKING_INTRO)
        await self._speak(intro, contact.language)
        self._check(session)
        self._record_call(contact, now)

    async def _take_turn(self, session: ConversationSession) -> None:
        contact = session.contact

        self._transition(session, ConversationState.LISTENING)
        audio = await self._listen(session)

        self._transition(session, ConversationState.INTERPRETING)
        transcript = await self._transcribe(audio) if audio else None
        self._check(session)
        transcript = (transcript or '').strip()
        if not transcript:
            await self._handle_misunderstanding(session)
            return

        await self._practice(transcript, contact.language)
        review_words = await self._review_words(contact.language)
        self._check(session)

        reply_language = self.fallback_policy.language_for(contact.language, self.native_language)
        prompt = build_reply_prompt(session, transcript, review_words)
        reply = await self._generate(prompt, reply_language)
        self._check(session)
        if not reply:
            await self._handle_misunderstanding(session)
            return

        self._transition(session, ConversationState.SPEAKING_RESPONSE)
        spoken = await self._speak(reply, reply_language)
        self._check(session)
        if not spoken:
            await self._handle_misunderstanding(session)
            return

        session.add_exchange(transcript, reply)
        self.fallback_policy.on_success()
        session.consecutive_failures = self.fallback_policy.consecutive_failures

    async def _handle_misunderstanding(self, session: ConversationSession) -> None:
        escalate = self.fallback_policy.on_failure()
        session.consecutive_failures = self.fallback_policy.consecutive_failures
        if escalate:
            message, language = CLARIFY_NATIVE, self.native_language
        else:
            message, language = CLARIFY_TARGET, session.contact.language
        logger.info(f"Misunderstanding #{session.consecutive_failures}, answering in {language}")

        self._transition(session, ConversationState.SPEAKING_RESPONSE)
        await self._speak(message, language)
        self._check(session)
        if escalate and self.fallback_resume_delay > 0:
            await asyncio.sleep(self.fallback_resume_delay)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _listen(self, session: ConversationSession) -> bytes | None:
        """Capture for the fixed window. Returns None if nothing could be recorded."""
        try:
            handle = await self.capture.start()
        except Exception as e:
            logger.warning(f"Audio capture failed to start: {e}")
            return None

        self._capture_handle = handle
        try:
            await asyncio.sleep(self.listen_window_seconds)
            self._check(session)
            return await self.capture.stop(handle)
        except (asyncio.CancelledError, SessionEnded):
            self.capture.discard(handle)
            raise
        except Exception as e:
            logger.warning(f"Audio capture failed: {e}")
            self.capture.discard(handle)
            return None
        finally:
            if self._capture_handle is handle:
                self._capture_handle = None

    async def _transcribe(self, audio: bytes) -> str | None:
        try:
            return await self.transcriber.transcribe(audio)
        except Exception as e:
            logger.warning(f"Transcription failed: {e}")
            return None

    async def _generate(self, prompt: str, language: str) -> str | None:
        try:
            text = await self.generator.generate(prompt, language)
        except Exception as e:
            logger.warning(f"Text generation failed: {e}")
            return None
        return text.strip() if text else None

    async def _speak(self, text: str, language: str) -> bool:
        """Speak one line. Anything still playing is cut off first."""
        try:
            self.speaker.stop_immediately()
            return bool(await self.speaker.speak(text, language))
        except Exception as e:
            logger.warning(f"Speech synthesis failed: {e}")
            return False

    async def _practice(self, transcript: str, language: str) -> None:
        """Schedule the words of a transcript in the executor; lookups may hit the database."""
        loop = asyncio.get_event_loop()
        try:
            self.last_word_statuses = await loop.run_in_executor(
                None, lambda: self.scheduler.process_utterance(transcript, language))
        except Exception as e:
            logger.error(f"Failed to update vocabulary: {e}")
            return
        self._persist(self.scheduler.repository.save, 'vocabulary')

    async def _review_words(self, language: str) -> list[str]:
        loop = asyncio.get_event_loop()
        try:
            due = await loop.run_in_executor(None, lambda: self.scheduler.due_words(language))
            return due[:REVIEW_WORDS_IN_PROMPT]
        except Exception as e:
            logger.error(f"Failed to load review words: {e}")
            return []

    def _record_call(self, contact: Contact, when) -> None:
        contact.last_call_time = when
        if self.contacts is not None:
            self._persist(lambda: self.contacts.update_last_call_time(contact.id, when),
                          f'last call time for {contact.name}')

    # ------------------------------------------------------------------
    # Fire-and-forget persistence
    # ------------------------------------------------------------------

    def _persist(self, write, description: str) -> None:
        loop = asyncio.get_event_loop()
        future = loop.run_in_executor(None, self._guarded_write, write, description)
        self._pending_writes.add(future)
        future.add_done_callback(self._pending_writes.discard)

    @staticmethod
    def _guarded_write(write, description: str) -> None:
        try:
            write()
        except Exception as e:
            logger.error(f"Failed to persist {description}: {e}")

    async def flush_pending_writes(self) -> None:
        """Wait for background writes (used on shutdown and in tests)."""
        if self._pending_writes:
            await asyncio.gather(*list(self._pending_writes), return_exceptions=True)
