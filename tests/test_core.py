"""Unit tests for ringback core module."""

import asyncio
import threading
import unittest
from datetime import datetime, timedelta, timezone

from core.config import (
    MAX_SEVERITY, FIRST_TOUCH_INTERVAL, HISTORY_WINDOW,
    GENERIC_GREETING, CLARIFY_TARGET, CLARIFY_NATIVE
)
from core.fallback import FallbackPolicy
from core.interfaces import (
    TextGenerationService, TranscriptionService, SpeechSynthesisService,
    AudioCaptureService, VocabularyRepository, ContactRepository
)
from core.models import WordStatus, WordRecord, Contact, ConversationSession
from core.orchestrator import ConversationOrchestrator, ConversationState
from core.prompts import build_ringing_prompt, build_conversation_context, build_reply_prompt
from core.scheduler import SpacedRepetitionScheduler, ease_factor, next_interval, add_days
from core.utils import tokenize


NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


# ============================================================================
# Mock Implementations
# ============================================================================

class MockVocabularyRepository(VocabularyRepository):
    """In-memory repository preserving insertion order."""

    def __init__(self):
        self.records = {}
        self.save_calls = 0
        self.fail_save = False
        self.threads = set()

    def find(self, word: str, language: str):
        self.threads.add(threading.get_ident())
        return self.records.get((word, language))

    def find_all_by_status(self, language: str, status: str) -> set[str]:
        return {r.word for r in self.records.values()
                if r.language == language and r.status_kind == status}

    def upsert(self, record) -> None:
        self.records[record.key] = record

    def due_before(self, language: str, timestamp: datetime) -> list:
        self.threads.add(threading.get_ident())
        return [r for r in self.records.values()
                if r.language == language and r.next_review <= timestamp]

    def save(self) -> None:
        self.save_calls += 1
        if self.fail_save:
            raise IOError("disk full")


class MockContactRepository(ContactRepository):

    def __init__(self, contacts: list = None):
        self.contacts = {c.id: c for c in contacts or []}
        self.last_call_updates = []

    def get_contact(self, contact_id: str):
        return self.contacts.get(contact_id)

    def list_contacts(self, language: str = None) -> list:
        return [c for c in self.contacts.values() if language is None or c.language == language]

    def save_contact(self, contact) -> None:
        self.contacts[contact.id] = contact

    def update_last_call_time(self, contact_id: str, when: datetime) -> None:
        self.last_call_updates.append((contact_id, when))


class MockTextGenerator(TextGenerationService):
    """Returns queued responses; None once the queue is empty."""

    def __init__(self, responses: list = None):
        self.responses = list(responses or [])
        self.calls = []

    async def generate(self, prompt: str, language: str) -> str | None:
        self.calls.append((prompt, language))
        if not self.responses:
            return None
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class PendingTextGenerator(MockTextGenerator):
    """Answers the intro, then holds every reply until released."""

    def __init__(self, intro: str):
        super().__init__([intro])
        self.release = asyncio.Event()

    async def generate(self, prompt: str, language: str) -> str | None:
        if self.responses:
            return await super().generate(prompt, language)
        self.calls.append((prompt, language))
        await self.release.wait()
        return "Demasiado tarde."


class MockTranscriber(TranscriptionService):
    """Returns queued transcripts; '' once the queue is empty."""

    def __init__(self, transcripts: list = None):
        self.transcripts = list(transcripts or [])
        self.calls = []

    async def transcribe(self, audio: bytes) -> str | None:
        self.calls.append(audio)
        if not self.transcripts:
            return ''
        return self.transcripts.pop(0)


class MockSpeaker(SpeechSynthesisService):

    def __init__(self):
        self.spoken = []
        self.stop_calls = 0
        self.fail_texts = set()
        self.delay = 0

    async def speak(self, text: str, language: str) -> bool:
        await asyncio.sleep(self.delay)
        if text in self.fail_texts:
            return False
        self.spoken.append((text, language))
        return True

    def stop_immediately(self) -> None:
        self.stop_calls += 1


class MockCapture(AudioCaptureService):

    def __init__(self, audio: bytes = b'\x00\x01' * 100):
        self.audio = audio
        self.fail_start = False
        self.open_handle = None
        self.started = []
        self.stopped = []
        self.discarded = []
        self._counter = 0

    async def start(self):
        if self.fail_start:
            raise OSError("microphone unavailable")
        if self.open_handle is not None:
            raise RuntimeError("capture already open")
        self._counter += 1
        self.open_handle = self._counter
        self.started.append(self._counter)
        return self._counter

    async def stop(self, handle) -> bytes:
        self.stopped.append(handle)
        self.open_handle = None
        return self.audio

    def discard(self, handle) -> None:
        self.discarded.append(handle)
        if self.open_handle == handle:
            self.open_handle = None


async def wait_until(predicate, timeout: float = 2.0):
    """Poll the event loop until predicate() holds."""
    deadline = asyncio.get_event_loop().time() + timeout
    while not predicate():
        if asyncio.get_event_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


# ============================================================================
# Test Cases
# ============================================================================

class TestTokenize(unittest.TestCase):
    """Tests for tokenize utility function."""

    def test_case_folds_and_collapses_duplicates(self):
        self.assertEqual(tokenize("Cats and cats run."), {"cats", "and", "run"})

    def test_drops_tokens_with_digits(self):
        self.assertEqual(tokenize("Hello, hello world2!"), {"hello"})

    def test_drops_single_characters(self):
        self.assertEqual(tokenize("a I x yo"), {"yo"})

    def test_empty_string(self):
        self.assertEqual(tokenize(""), set())
        self.assertEqual(tokenize(None), set())

    def test_unicode_letters_are_word_characters(self):
        self.assertEqual(tokenize("¿Cómo estás, señor?"), {"cómo", "estás", "señor"})

    def test_splits_on_underscores_and_punctuation(self):
        self.assertEqual(tokenize("foo_bar--baz  qux\n"), {"foo", "bar", "baz", "qux"})


class TestWordStatus(unittest.TestCase):

    def test_equality(self):
        self.assertEqual(WordStatus.struggling(2), WordStatus.struggling(2))
        self.assertNotEqual(WordStatus.struggling(2), WordStatus.struggling(3))
        self.assertEqual(WordStatus.proficient(), WordStatus.proficient())
        self.assertNotEqual(WordStatus.proficient(), WordStatus.struggling(1))

    def test_proficient_has_no_severity(self):
        self.assertEqual(WordStatus('proficient', 3).severity, 0)
        self.assertEqual(WordStatus.proficient().to_dict(), {'status': 'proficient'})

    def test_to_dict_struggling(self):
        self.assertEqual(WordStatus.struggling(1).to_dict(), {'status': 'struggling', 'severity': 1})

    def test_unknown_kind(self):
        with self.assertRaises(ValueError):
            WordStatus('forgotten')


class TestWordRecord(unittest.TestCase):

    def test_new_record_defaults(self):
        record = WordRecord('hola', 'es', now=NOW)
        self.assertEqual(record.status, WordStatus.struggling(MAX_SEVERITY))
        self.assertEqual(record.repetitions, 0)
        self.assertEqual(record.previous_interval, 0.0)
        self.assertEqual(record.next_review, NOW)

    def test_from_dict_restores_state(self):
        record = WordRecord('hola', 'es', severity=1, now=NOW)
        record.mark_proficient()
        record.repetitions = 2
        record.previous_interval = 4.5
        restored = WordRecord.from_dict(record.to_dict())
        self.assertTrue(restored.is_proficient)
        self.assertEqual(restored.severity, 1)
        self.assertEqual(restored.repetitions, 2)
        self.assertEqual(restored.previous_interval, 4.5)
        self.assertEqual(restored.next_review, NOW)


class TestContactAndSession(unittest.TestCase):

    def test_blank_personality_gets_default(self):
        contact = Contact('c1', 'Ana', personality='   ')
        self.assertEqual(contact.personality, 'friendly and curious')

    def test_history_is_bounded(self):
        session = ConversationSession(Contact('c1', 'Ana'), history_window=4)
        for i in range(3):
            session.add_exchange(f"user {i}", f"ai {i}")
        self.assertEqual(len(session.history), 4)
        self.assertEqual(session.history[0], ('user', 'user 1'))
        self.assertEqual(session.history[-1], ('ai', 'ai 2'))

    def test_default_history_window(self):
        session = ConversationSession(Contact('c1', 'Ana'))
        self.assertEqual(session.history_window, HISTORY_WINDOW)


class TestIntervalMath(unittest.TestCase):

    def test_ease_factor_values(self):
        self.assertAlmostEqual(ease_factor(0, 5), 2.65)
        self.assertAlmostEqual(ease_factor(1, 5), 2.6)
        self.assertAlmostEqual(ease_factor(0, 2), 2.11)
        self.assertAlmostEqual(ease_factor(0, 3), 2.29)

    def test_next_interval_floor(self):
        self.assertEqual(next_interval(0, 0, 5, 1.0), 1.0)
        self.assertEqual(next_interval(0, 0, 2, 0.5), 0.5)

    def test_proficient_interval_at_least_struggling_interval(self):
        for repetitions in range(6):
            for previous in [0, 0.25, 0.5, 1, 3, 10, 40]:
                proficient = next_interval(previous, repetitions, 5, 1.0)
                struggling = next_interval(previous, repetitions, 2, 0.5)
                self.assertGreaterEqual(proficient, struggling)

    def test_add_days_truncates(self):
        self.assertEqual(add_days(NOW, 0.99), NOW)
        self.assertEqual(add_days(NOW, 3.8), NOW + timedelta(days=3))


class TestSpacedRepetitionScheduler(unittest.TestCase):

    def setUp(self):
        self.repo = MockVocabularyRepository()
        self.scheduler = SpacedRepetitionScheduler(self.repo, now_fn=lambda: NOW)

    def seed(self, word, severity, previous_interval=0.0, repetitions=0, language='es'):
        record = WordRecord(word, language, severity=severity, now=NOW)
        record.previous_interval = previous_interval
        record.repetitions = repetitions
        self.repo.upsert(record)
        return record

    def test_new_word_is_struggling_at_max_severity(self):
        status = self.scheduler.process_word('hola', 'es')
        self.assertEqual(status, WordStatus.struggling(3))
        record = self.repo.find('hola', 'es')
        self.assertAlmostEqual(record.previous_interval, FIRST_TOUCH_INTERVAL)
        self.assertEqual(record.next_review, NOW)
        self.assertEqual(record.repetitions, 0)

    def test_same_word_is_new_in_another_language(self):
        self.scheduler.process_word('hola', 'es')
        self.scheduler.process_word('hola', 'es')
        self.assertEqual(self.scheduler.process_word('hola', 'pt'), WordStatus.struggling(3))

    def test_severity_decrements_to_proficient(self):
        self.assertEqual(self.scheduler.process_word('gato', 'es'), WordStatus.struggling(3))
        self.assertEqual(self.scheduler.process_word('gato', 'es'), WordStatus.struggling(2))
        self.assertEqual(self.scheduler.process_word('gato', 'es'), WordStatus.struggling(1))
        self.assertEqual(self.scheduler.process_word('gato', 'es'), WordStatus.proficient())
        record = self.repo.find('gato', 'es')
        self.assertEqual(record.repetitions, 1)
        self.assertEqual(record.severity, 0)
        self.assertEqual(record.previous_interval, 1.0)
        self.assertEqual(record.next_review, NOW + timedelta(days=1))

    def test_struggling_interval_is_accelerated(self):
        self.scheduler.process_word('gato', 'es')
        self.scheduler.process_word('gato', 'es')
        record = self.repo.find('gato', 'es')
        # quality 2: max(0.5, 1/3 * 2.11) / 3
        self.assertAlmostEqual(record.previous_interval, (FIRST_TOUCH_INTERVAL * 2.11) / 3)

    def test_quality_uses_severity_before_decrement(self):
        self.seed('perro', 2, previous_interval=5.0)
        status = self.scheduler.process_word('perro', 'es')
        self.assertEqual(status, WordStatus.struggling(1))
        record = self.repo.find('perro', 'es')
        # quality 3 -> factor 2.29; 5 * 2.29 / 3 = 3.8166...
        self.assertAlmostEqual(record.previous_interval, 5.0 * 2.29 / 3)
        self.assertEqual(record.next_review, NOW + timedelta(days=3))

    def test_repetitions_count_toward_proficient_factor(self):
        self.seed('casa', 1, previous_interval=10.0, repetitions=1)
        self.assertEqual(self.scheduler.process_word('casa', 'es'), WordStatus.proficient())
        record = self.repo.find('casa', 'es')
        self.assertEqual(record.repetitions, 2)
        # factor with repetitions=2 and quality 5: 2.5 + 0.05 = 2.55
        self.assertAlmostEqual(record.previous_interval, 25.5)
        self.assertEqual(record.next_review, NOW + timedelta(days=25))

    def test_proficient_word_is_not_rescheduled(self):
        record = self.seed('sol', 1, previous_interval=2.0)
        record.mark_proficient()
        record.next_review = NOW + timedelta(days=7)
        later = NOW + timedelta(hours=5)
        scheduler = SpacedRepetitionScheduler(self.repo, now_fn=lambda: later)
        self.assertEqual(scheduler.process_word('sol', 'es'), WordStatus.proficient())
        self.assertEqual(record.next_review, NOW + timedelta(days=7))
        self.assertEqual(record.previous_interval, 2.0)
        self.assertEqual(record.last_practiced, later)

    def test_repeated_words_advance_once_per_utterance(self):
        self.seed('run', 3)
        result = self.scheduler.process_utterance("run run run", "en")
        self.assertEqual(result, {'run': WordStatus.struggling(2)})

    def test_process_utterance_snapshot(self):
        self.seed('como', 2)
        result = self.scheduler.process_utterance("Hola, ¿cómo estás? Como 2 veces", "es")
        self.assertEqual(result, {
            'hola': WordStatus.struggling(3),
            'cómo': WordStatus.struggling(3),
            'estás': WordStatus.struggling(3),
            'como': WordStatus.struggling(1),
            'veces': WordStatus.struggling(3),
        })

    def test_due_words_ordered_by_next_review(self):
        for word, days in [('uno', 1), ('tres', 3), ('dos', 2)]:
            record = self.seed(word, 3)
            record.next_review = NOW + timedelta(days=days)
        due = self.scheduler.due_words('es', as_of=NOW + timedelta(days=4))
        self.assertEqual(due, ['uno', 'dos', 'tres'])

    def test_due_words_excludes_future_and_other_languages(self):
        self.seed('ahora', 3).next_review = NOW
        self.seed('luego', 3).next_review = NOW + timedelta(days=2)
        self.seed('now', 3, language='en').next_review = NOW
        self.assertEqual(self.scheduler.due_words('es'), ['ahora'])

    def test_due_words_ties_keep_insertion_order(self):
        for word in ['b', 'a', 'c']:
            self.seed(word * 2, 3).next_review = NOW
        self.assertEqual(self.scheduler.due_words('es', as_of=NOW), ['bb', 'aa', 'cc'])


    def test_word_locks_are_released(self):
        self.scheduler.process_utterance('uno dos tres', 'es')
        self.scheduler.process_word('uno', 'es')
        self.assertEqual(len(self.scheduler._locks), 0)


class TestFallbackPolicy(unittest.TestCase):

    def test_escalates_on_second_failure(self):
        policy = FallbackPolicy(threshold=2)
        self.assertFalse(policy.on_failure())
        self.assertTrue(policy.on_failure())

    def test_success_resets_before_escalation(self):
        policy = FallbackPolicy(threshold=2)
        policy.on_failure()
        policy.on_success()
        self.assertEqual(policy.consecutive_failures, 0)
        self.assertFalse(policy.on_failure())

    def test_sticky_keeps_escalation_after_success(self):
        policy = FallbackPolicy(threshold=2, sticky=True)
        policy.on_failure()
        policy.on_failure()
        policy.on_success()
        self.assertTrue(policy.escalated)
        self.assertEqual(policy.language_for('es', 'en'), 'en')

    def test_non_sticky_resets_after_escalation(self):
        policy = FallbackPolicy(threshold=2, sticky=False)
        policy.on_failure()
        policy.on_failure()
        policy.on_success()
        self.assertFalse(policy.escalated)
        self.assertEqual(policy.language_for('es', 'en'), 'es')

    def test_reset(self):
        policy = FallbackPolicy()
        policy.on_failure()
        policy.on_failure()
        policy.reset()
        self.assertEqual(policy.consecutive_failures, 0)


class TestPrompts(unittest.TestCase):

    def test_ringing_prompt_includes_elapsed_hours(self):
        contact = Contact('c1', 'Ana', personality='a painter',
                          last_call_time=NOW - timedelta(hours=26))
        prompt = build_ringing_prompt(contact, NOW)
        self.assertIn('Ana', prompt)
        self.assertIn('a painter', prompt)
        self.assertIn('Time elapsed: 26 hours.', prompt)

    def test_ringing_prompt_first_call(self):
        prompt = build_ringing_prompt(Contact('c1', 'Ana'), NOW)
        self.assertIn('first time', prompt)

    def test_conversation_context(self):
        session = ConversationSession(Contact('c1', 'Ana'))
        session.add_exchange('hola', '¡Hola! ¿Qué tal?')
        context = build_conversation_context(session, 'bien')
        self.assertEqual(context, "User: hola\nAna: ¡Hola! ¿Qué tal?\nUser: bien")

    def test_reply_prompt_lists_review_words(self):
        session = ConversationSession(Contact('c1', 'Ana'))
        prompt = build_reply_prompt(session, 'hola', ['gato', 'perro'])
        self.assertIn('gato, perro', prompt)
        self.assertIn('User: hola', prompt)


class TestConversationOrchestrator(unittest.IsolatedAsyncioTestCase):

    def make(self, generator=None, transcriber=None, listen_window=0.01, sticky=True):
        self.repo = MockVocabularyRepository()
        self.contacts = MockContactRepository()
        self.generator = generator or MockTextGenerator()
        self.transcriber = transcriber or MockTranscriber()
        self.speaker = MockSpeaker()
        self.capture = MockCapture()
        self.orchestrator = ConversationOrchestrator(
            scheduler=SpacedRepetitionScheduler(self.repo),
            fallback_policy=FallbackPolicy(threshold=2, sticky=sticky),
            generator=self.generator,
            transcriber=self.transcriber,
            speaker=self.speaker,
            capture=self.capture,
            contacts=self.contacts,
            native_language='en',
            listen_window_seconds=listen_window,
            fallback_resume_delay=0
        )
        return self.orchestrator

    async def asyncTearDown(self):
        orchestrator = getattr(self, 'orchestrator', None)
        if orchestrator is not None:
            orchestrator.end_conversation()
            await orchestrator.wait_closed()
            await orchestrator.flush_pending_writes()

    async def test_initial_state(self):
        orchestrator = self.make()
        self.assertEqual(orchestrator.state, ConversationState.IDLE)
        self.assertFalse(orchestrator.is_active)

    async def test_end_without_call_is_noop(self):
        orchestrator = self.make()
        orchestrator.end_conversation()
        orchestrator.end_conversation()
        self.assertEqual(orchestrator.state, ConversationState.IDLE)
        self.assertIsNone(orchestrator.session)

    async def test_happy_path(self):
        generator = MockTextGenerator(["¡Hola! Hoy fui al mercado.", "Muy bien, ¿y tú?"])
        transcriber = MockTranscriber(["hola como estas"])
        orchestrator = self.make(generator, transcriber)

        session = await orchestrator.start_conversation(Contact('c1', 'Ana', language='es'))
        self.assertTrue(session.active)
        await wait_until(lambda: len(session.history) == 2)

        self.assertEqual(self.speaker.spoken[0], ("¡Hola! Hoy fui al mercado.", 'es'))
        self.assertEqual(self.speaker.spoken[1], ("Muy bien, ¿y tú?", 'es'))
        self.assertEqual(generator.calls[1][1], 'es')
        self.assertEqual(session.history, [('user', 'hola como estas'), ('ai', 'Muy bien, ¿y tú?')])
        for word in ['hola', 'como', 'estas']:
            self.assertEqual(self.repo.find(word, 'es').status, WordStatus.struggling(3))

    async def test_intro_falls_back_to_generic_greeting(self):
        orchestrator = self.make(MockTextGenerator([RuntimeError("no network")]))
        await orchestrator.start_conversation(Contact('c1', 'Ana', language='es'))
        await wait_until(lambda: len(self.speaker.spoken) >= 1)
        self.assertEqual(self.speaker.spoken[0], (GENERIC_GREETING, 'es'))

    async def test_last_call_time_recorded(self):
        orchestrator = self.make(MockTextGenerator(["Hola"]))
        contact = Contact('c1', 'Ana', language='es')
        await orchestrator.start_conversation(contact)
        await wait_until(lambda: orchestrator.state == ConversationState.LISTENING)
        await orchestrator.flush_pending_writes()
        self.assertEqual(self.contacts.last_call_updates[0][0], 'c1')
        self.assertIsNotNone(contact.last_call_time)

    async def test_escalation_after_two_empty_transcripts(self):
        generator = MockTextGenerator(["Hola", "I am fine, thanks."])
        transcriber = MockTranscriber(['', '   ', 'estoy bien'])
        orchestrator = self.make(generator, transcriber)

        session = await orchestrator.start_conversation(Contact('c1', 'Ana', language='es'))
        await wait_until(lambda: len(session.history) == 2)

        self.assertEqual(self.speaker.spoken[1], (CLARIFY_TARGET, 'es'))
        self.assertEqual(self.speaker.spoken[2], (CLARIFY_NATIVE, 'en'))
        # Sticky fallback: the reply after escalation stays in the native language
        self.assertEqual(generator.calls[1][1], 'en')
        self.assertEqual(self.speaker.spoken[3], ("I am fine, thanks.", 'en'))
        self.assertTrue(orchestrator.fallback_policy.escalated)

    async def test_non_sticky_fallback_returns_to_target_language(self):
        generator = MockTextGenerator(["Hola", "I am fine.", "¡Qué bueno!"])
        transcriber = MockTranscriber(['', '', 'estoy bien', 'muy bien'])
        orchestrator = self.make(generator, transcriber, sticky=False)

        session = await orchestrator.start_conversation(Contact('c1', 'Ana', language='es'))
        await wait_until(lambda: len(session.history) == 4)

        self.assertEqual(generator.calls[1][1], 'en')
        self.assertEqual(generator.calls[2][1], 'es')
        self.assertEqual(self.speaker.spoken[4], ("¡Qué bueno!", 'es'))

    async def test_generation_failure_is_a_misunderstanding(self):
        generator = MockTextGenerator(["Hola", None])
        transcriber = MockTranscriber(['quiero cafe'])
        orchestrator = self.make(generator, transcriber)

        session = await orchestrator.start_conversation(Contact('c1', 'Ana', language='es'))
        await wait_until(lambda: len(self.speaker.spoken) >= 2)

        self.assertEqual(self.speaker.spoken[1], (CLARIFY_TARGET, 'es'))
        self.assertEqual(session.history, [])
        # Words were still scheduled before the reply failed
        self.assertIsNotNone(self.repo.find('quiero', 'es'))

    async def test_reply_synthesis_failure_is_a_misunderstanding(self):
        generator = MockTextGenerator(["Hola", "Claro que sí."])
        transcriber = MockTranscriber(['vamos'])
        orchestrator = self.make(generator, transcriber)
        self.speaker.fail_texts.add("Claro que sí.")

        session = await orchestrator.start_conversation(Contact('c1', 'Ana', language='es'))
        await wait_until(lambda: len(self.speaker.spoken) >= 2)

        self.assertEqual(self.speaker.spoken[1], (CLARIFY_TARGET, 'es'))
        self.assertEqual(session.history, [])

    async def test_capture_failure_is_a_misunderstanding(self):
        orchestrator = self.make(MockTextGenerator(["Hola"]))
        self.capture.fail_start = True
        self.speaker.delay = 0.01

        session = await orchestrator.start_conversation(Contact('c1', 'Ana', language='es'))
        await wait_until(lambda: len(self.speaker.spoken) >= 3)

        self.assertEqual(self.speaker.spoken[1], (CLARIFY_TARGET, 'es'))
        self.assertEqual(self.speaker.spoken[2], (CLARIFY_NATIVE, 'en'))
        self.assertEqual(self.transcriber.calls, [])
        self.assertTrue(session.active)

    async def test_persistence_failure_does_not_end_call(self):
        generator = MockTextGenerator(["Hola", "Vale."])
        transcriber = MockTranscriber(['buenos dias'])
        orchestrator = self.make(generator, transcriber)
        self.repo.fail_save = True

        session = await orchestrator.start_conversation(Contact('c1', 'Ana', language='es'))
        await wait_until(lambda: len(session.history) == 2)
        await orchestrator.flush_pending_writes()

        self.assertGreaterEqual(self.repo.save_calls, 1)
        self.assertTrue(orchestrator.is_active)
        self.assertEqual(self.repo.find('buenos', 'es').status, WordStatus.struggling(3))

    async def test_capture_released_each_turn(self):
        generator = MockTextGenerator(["Hola", "Sí.", "No."])
        transcriber = MockTranscriber(['uno', 'dos'])
        orchestrator = self.make(generator, transcriber)

        session = await orchestrator.start_conversation(Contact('c1', 'Ana', language='es'))
        await wait_until(lambda: len(session.history) == 4)

        self.assertGreaterEqual(len(self.capture.stopped), 2)
        self.assertEqual(self.capture.stopped[:2], self.capture.started[:2])

    async def test_speech_never_overlaps(self):
        generator = MockTextGenerator(["Hola", "Sí."])
        transcriber = MockTranscriber(['vale'])
        orchestrator = self.make(generator, transcriber)

        session = await orchestrator.start_conversation(Contact('c1', 'Ana', language='es'))
        await wait_until(lambda: len(session.history) == 2)

        self.assertGreaterEqual(self.speaker.stop_calls, len(self.speaker.spoken))

    async def test_end_while_listening(self):
        orchestrator = self.make(MockTextGenerator(["Hola"]), listen_window=10)

        session = await orchestrator.start_conversation(Contact('c1', 'Ana', language='es'))
        await wait_until(lambda: orchestrator.state == ConversationState.LISTENING)
        handle = self.capture.open_handle
        spoken_before = list(self.speaker.spoken)

        orchestrator.end_conversation()

        self.assertFalse(session.active)
        self.assertFalse(orchestrator.is_active)
        self.assertIsNone(orchestrator.session)
        self.assertEqual(orchestrator.state, ConversationState.ENDED)
        self.assertIn(handle, self.capture.discarded)
        self.assertIsNone(self.capture.open_handle)

        await orchestrator.wait_closed()
        await asyncio.sleep(0.05)
        self.assertEqual(orchestrator.state, ConversationState.ENDED)
        self.assertEqual(self.speaker.spoken, spoken_before)
        self.assertEqual(self.transcriber.calls, [])
        self.assertEqual(self.capture.stopped, [])

    async def test_end_while_speaking_stops_speech(self):
        orchestrator = self.make(MockTextGenerator(["Hola, ¿qué tal?"]))
        self.speaker.delay = 10

        session = await orchestrator.start_conversation(Contact('c1', 'Ana', language='es'))
        await wait_until(lambda: orchestrator.state == ConversationState.SPEAKING_INTRO)
        stops_before = self.speaker.stop_calls

        orchestrator.end_conversation()

        self.assertEqual(self.speaker.stop_calls, stops_before + 1)
        await orchestrator.wait_closed()
        await asyncio.sleep(0.05)
        self.assertFalse(session.active)
        self.assertEqual(orchestrator.state, ConversationState.ENDED)
        self.assertEqual(self.speaker.spoken, [])
        self.assertEqual(self.capture.started, [])
        self.assertEqual(self.contacts.last_call_updates, [])

    async def test_end_while_reply_pending(self):
        generator = PendingTextGenerator("Hola")
        orchestrator = self.make(generator, MockTranscriber(['hola amigo']))

        session = await orchestrator.start_conversation(Contact('c1', 'Ana', language='es'))
        await wait_until(lambda: len(generator.calls) == 2)
        self.assertEqual(orchestrator.state, ConversationState.INTERPRETING)

        orchestrator.end_conversation()
        generator.release.set()
        await orchestrator.wait_closed()
        await asyncio.sleep(0.05)

        self.assertEqual(self.speaker.spoken, [("Hola", 'es')])
        self.assertEqual(session.history, [])
        self.assertEqual(orchestrator.state, ConversationState.ENDED)

    async def test_vocabulary_lookups_run_off_the_event_loop(self):
        generator = MockTextGenerator(["Hola", "Vale."])
        orchestrator = self.make(generator, MockTranscriber(['buenas tardes']))

        session = await orchestrator.start_conversation(Contact('c1', 'Ana', language='es'))
        await wait_until(lambda: len(session.history) == 2)

        self.assertTrue(self.repo.threads)
        self.assertNotIn(threading.get_ident(), self.repo.threads)

    async def test_start_while_active_replaces_session(self):
        orchestrator = self.make(MockTextGenerator(["Hola", "Bonjour"]), listen_window=10)

        first = await orchestrator.start_conversation(Contact('c1', 'Ana', language='es'))
        await wait_until(lambda: orchestrator.state == ConversationState.LISTENING)
        first_handle = self.capture.open_handle

        second = await orchestrator.start_conversation(Contact('c2', 'Luc', language='fr'))

        self.assertFalse(first.active)
        self.assertIs(orchestrator.session, second)
        self.assertIn(first_handle, self.capture.discarded)
        await wait_until(lambda: orchestrator.state == ConversationState.LISTENING)
        self.assertEqual(self.speaker.spoken[-1], ("Bonjour", 'fr'))

    async def test_status_snapshot(self):
        generator = MockTextGenerator(["Hola", "Vale."])
        transcriber = MockTranscriber(['gracias'])
        orchestrator = self.make(generator, transcriber)

        session = await orchestrator.start_conversation(Contact('c1', 'Ana', language='es'))
        await wait_until(lambda: len(session.history) == 2)

        status = orchestrator.status()
        self.assertTrue(status['active'])
        self.assertEqual(status['session']['contact']['name'], 'Ana')
        self.assertEqual(status['word_statuses'], {'gracias': {'status': 'struggling', 'severity': 3}})


if __name__ == '__main__':
    unittest.main()
