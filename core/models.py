"""Domain models for ringback application."""

from datetime import datetime, timezone

from .config import DEFAULT_LANGUAGE, DEFAULT_PERSONALITY, HISTORY_WINDOW, MAX_SEVERITY


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _format_time(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class WordStatus:
    """Proficiency tier of a word: proficient, or struggling with a severity."""

    PROFICIENT = 'proficient'
    STRUGGLING = 'struggling'

    def __init__(self, kind: str, severity: int = 0):
        if kind not in (self.PROFICIENT, self.STRUGGLING):
            raise ValueError(f"Unknown word status: {kind}")
        self.kind = kind
        self.severity = severity if kind == self.STRUGGLING else 0

    @classmethod
    def proficient(cls) -> 'WordStatus':
        return cls(cls.PROFICIENT)

    @classmethod
    def struggling(cls, severity: int) -> 'WordStatus':
        return cls(cls.STRUGGLING, severity)

    @property
    def is_proficient(self) -> bool:
        return self.kind == self.PROFICIENT

    def to_dict(self) -> dict:
        if self.is_proficient:
            return {'status': self.kind}
        return {'status': self.kind, 'severity': self.severity}

    def __eq__(self, other) -> bool:
        if not isinstance(other, WordStatus):
            return NotImplemented
        return self.kind == other.kind and self.severity == other.severity

    def __hash__(self) -> int:
        return hash((self.kind, self.severity))

    def __repr__(self) -> str:
        if self.is_proficient:
            return 'WordStatus.proficient()'
        return f'WordStatus.struggling({self.severity})'


class WordRecord:
    """Scheduling state for one (word, language) pair."""

    def __init__(self, word: str, language: str, severity: int = MAX_SEVERITY,
                 now: datetime = None):
        now = now or utcnow()
        self.word = word
        self.language = language
        self.status_kind = WordStatus.STRUGGLING
        # Kept after the word becomes proficient, for audit
        self.severity = severity
        self.repetitions = 0
        self.previous_interval = 0.0
        self.last_practiced = now
        self.next_review = now

    @property
    def key(self) -> tuple[str, str]:
        return (self.word, self.language)

    @property
    def status(self) -> WordStatus:
        if self.status_kind == WordStatus.PROFICIENT:
            return WordStatus.proficient()
        return WordStatus.struggling(self.severity)

    @property
    def is_proficient(self) -> bool:
        return self.status_kind == WordStatus.PROFICIENT

    def mark_proficient(self) -> None:
        self.status_kind = WordStatus.PROFICIENT

    def to_dict(self) -> dict:
        return {
            'word': self.word,
            'language': self.language,
            'status': self.status_kind,
            'severity': self.severity,
            'repetitions': self.repetitions,
            'previous_interval': self.previous_interval,
            'last_practiced': _format_time(self.last_practiced),
            'next_review': _format_time(self.next_review)
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'WordRecord':
        record = cls(data['word'], data['language'], data.get('severity', MAX_SEVERITY))
        record.status_kind = data.get('status', WordStatus.STRUGGLING)
        record.repetitions = data.get('repetitions', 0)
        record.previous_interval = float(data.get('previous_interval', 0.0))
        if data.get('last_practiced'):
            record.last_practiced = _parse_time(data['last_practiced'])
        if data.get('next_review'):
            record.next_review = _parse_time(data['next_review'])
        return record

    def __repr__(self) -> str:
        return f'WordRecord({self.word!r}, {self.language!r}, {self.status!r})'


class Contact:
    """A conversation partner the learner can call."""

    def __init__(self, contact_id: str, name: str, language: str = DEFAULT_LANGUAGE,
                 personality: str = None, voice: str = None, birthday: str = None,
                 last_call_time: datetime = None):
        self.id = contact_id
        self.name = name
        self.language = language
        self.personality = (personality or '').strip() or DEFAULT_PERSONALITY
        self.voice = voice or language
        self.birthday = birthday
        self.last_call_time = last_call_time

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'name': self.name,
            'language': self.language,
            'personality': self.personality,
            'voice': self.voice,
            'birthday': self.birthday,
            'last_call_time': _format_time(self.last_call_time)
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Contact':
        return cls(
            data['id'],
            data['name'],
            language=data.get('language', DEFAULT_LANGUAGE),
            personality=data.get('personality'),
            voice=data.get('voice'),
            birthday=data.get('birthday'),
            last_call_time=_parse_time(data.get('last_call_time'))
        )


class ConversationSession:
    """State of the one live call."""

    USER = 'user'
    AI = 'ai'

    def __init__(self, contact: Contact, history_window: int = HISTORY_WINDOW):
        self.contact = contact
        self.active = True
        self.consecutive_failures = 0
        self.history = []  # [(speaker, text)], oldest first
        self.history_window = history_window
        self.started_at = utcnow()

    def add_exchange(self, user_text: str, ai_text: str) -> None:
        """Append one user/ai exchange, dropping the oldest entries past the window."""
        self.history.append((self.USER, user_text))
        self.history.append((self.AI, ai_text))
        if len(self.history) > self.history_window:
            self.history = self.history[-self.history_window:]

    def to_dict(self) -> dict:
        return {
            'contact': self.contact.to_dict(),
            'active': self.active,
            'consecutive_failures': self.consecutive_failures,
            'history': [{'speaker': s, 'text': t} for s, t in self.history],
            'started_at': _format_time(self.started_at)
        }
