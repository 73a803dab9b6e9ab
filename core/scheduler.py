"""Spaced-repetition scheduling of words the learner uses in conversation.

Every word in an utterance is classified against the vocabulary repository:

* proficient words are left alone apart from ``last_practiced``;
* struggling words lose one point of severity and are rescheduled with a
  modified SM-2 interval, reviewed three times as often as plain SM-2 would;
* unseen words enter as struggling at maximum severity, due the same day.

Quality is derived from severity alone, never from timing or transcription
confidence, so schedules are reproducible.
"""

import logging
import threading
import weakref
from datetime import datetime, timedelta

from .config import (
    BASE_EASE, PERFECT_QUALITY, MAX_SEVERITY,
    PROFICIENT_MIN_INTERVAL, STRUGGLING_MIN_INTERVAL,
    STRUGGLING_ACCELERATION, FIRST_TOUCH_INTERVAL
)
from .interfaces import VocabularyRepository
from .models import WordRecord, WordStatus, utcnow
from .utils import tokenize

logger = logging.getLogger(__name__)


def ease_factor(repetitions: int, quality: float) -> float:
    """SM-2 ease factor, modified to weight low quality heavily."""
    return BASE_EASE + (0.15 - 0.05 * repetitions) - 0.9 * (1 - quality / PERFECT_QUALITY)


def next_interval(previous_interval: float, repetitions: int, quality: float,
                  floor: float) -> float:
    """Raw interval in days before any struggling acceleration."""
    return max(floor, previous_interval * ease_factor(repetitions, quality))


def add_days(moment: datetime, interval: float) -> datetime:
    """Advance by whole days; fractional intervals are truncated toward zero."""
    return moment + timedelta(days=int(interval))


class SpacedRepetitionScheduler:
    """Classifies and reschedules words against a VocabularyRepository."""

    def __init__(self, repository: VocabularyRepository, now_fn=None):
        self.repository = repository
        self.now_fn = now_fn or utcnow
        # Entries live only while some caller holds the lock
        self._locks = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def _word_lock(self, word: str, language: str) -> threading.Lock:
        with self._locks_guard:
            key = (word, language)
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def process_word(self, word: str, language: str) -> WordStatus:
        """Apply one encounter of a word and return its status afterwards."""
        with self._word_lock(word, language):
            now = self.now_fn()
            record = self.repository.find(word, language)

            if record is not None and record.is_proficient:
                record.last_practiced = now
                self.repository.upsert(record)
                return WordStatus.proficient()

            if record is not None and record.severity > 0:
                return self._advance(record, now)

            return self._introduce(word, language, now)

    def _advance(self, record: WordRecord, now: datetime) -> WordStatus:
        severity_before = record.severity
        record.severity -= 1
        record.last_practiced = now

        if record.severity == 0:
            record.mark_proficient()
            record.repetitions += 1
            interval = next_interval(record.previous_interval, record.repetitions,
                                     PERFECT_QUALITY, PROFICIENT_MIN_INTERVAL)
        else:
            quality = PERFECT_QUALITY - severity_before
            interval = next_interval(record.previous_interval, record.repetitions,
                                     quality, STRUGGLING_MIN_INTERVAL)
            interval /= STRUGGLING_ACCELERATION

        record.previous_interval = interval
        record.next_review = add_days(now, interval)
        self.repository.upsert(record)
        logger.debug(f"{record.word} ({record.language}): {record.status!r}, "
                     f"next review in {interval:.2f} days")
        return record.status

    def _introduce(self, word: str, language: str, now: datetime) -> WordStatus:
        record = WordRecord(word, language, severity=MAX_SEVERITY, now=now)
        # Factor is unused; a new word always gets the first-touch interval.
        ease_factor(0, PERFECT_QUALITY - MAX_SEVERITY)
        record.previous_interval = FIRST_TOUCH_INTERVAL
        record.next_review = add_days(now, FIRST_TOUCH_INTERVAL)
        self.repository.upsert(record)
        return record.status

    def process_utterance(self, text: str, language: str) -> dict[str, WordStatus]:
        """Classify every distinct word of an utterance once."""
        result = {}
        for word in tokenize(text):
            result[word] = self.process_word(word, language)
        return result

    def due_words(self, language: str, as_of: datetime = None) -> list[str]:
        """Words due for review, earliest first; ties keep insertion order."""
        as_of = as_of or self.now_fn()
        records = self.repository.due_before(language, as_of)
        records = sorted(records, key=lambda r: r.next_review)
        return [r.word for r in records]
