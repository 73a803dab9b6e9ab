"""PostgreSQL storage implementation."""

import logging
import os
import threading
from datetime import datetime

import psycopg2
from psycopg2.extras import RealDictCursor, execute_batch

from core.interfaces import VocabularyRepository, ContactRepository
from core.models import WordRecord, Contact

logger = logging.getLogger(__name__)

DEFAULT_DB_URL = 'postgresql://localhost:5432/ringback'


class PostgresConnection:
    """Lazily opened connection shared by the repositories."""

    def __init__(self, db_url: str = None):
        self.db_url = db_url or os.environ.get('DATABASE_URL', DEFAULT_DB_URL)
        self._conn = None
        self._initialized = False
        self.lock = threading.RLock()

    @property
    def conn(self):
        """Lazy connection initialization."""
        if self._conn is None or self._conn.closed:
            self._conn = psycopg2.connect(self.db_url)
            if not self._initialized:
                self._init_db()
                self._initialized = True
        return self._conn

    def _init_db(self):
        """Create tables if they don't exist."""
        with self._conn.cursor() as cur:
            cur.execute("""
                CREATE TABLE IF NOT EXISTS vocabulary (
                    word VARCHAR(255) NOT NULL,
                    language VARCHAR(32) NOT NULL,
                    status VARCHAR(16) NOT NULL,
                    severity INTEGER NOT NULL DEFAULT 0,
                    repetitions INTEGER NOT NULL DEFAULT 0,
                    previous_interval DOUBLE PRECISION NOT NULL DEFAULT 0,
                    last_practiced TIMESTAMPTZ NOT NULL,
                    next_review TIMESTAMPTZ NOT NULL,
                    created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (word, language)
                )
            """)
            cur.execute("""
                CREATE INDEX IF NOT EXISTS idx_vocabulary_due
                ON vocabulary(language, next_review)
            """)
            cur.execute("""
                CREATE TABLE IF NOT EXISTS contacts (
                    id VARCHAR(64) PRIMARY KEY,
                    name VARCHAR(255) NOT NULL,
                    language VARCHAR(32) NOT NULL,
                    personality TEXT,
                    voice VARCHAR(64),
                    birthday VARCHAR(32),
                    last_call_time TIMESTAMPTZ,
                    created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
                )
            """)
        self._conn.commit()

    def close(self):
        if self._conn is not None and not self._conn.closed:
            self._conn.close()


def _row_to_record(row: dict) -> WordRecord:
    record = WordRecord(row['word'], row['language'], row['severity'])
    record.status_kind = row['status']
    record.repetitions = row['repetitions']
    record.previous_interval = float(row['previous_interval'])
    record.last_practiced = row['last_practiced']
    record.next_review = row['next_review']
    return record


class PostgresVocabularyRepository(VocabularyRepository):
    """Write-behind vocabulary store.

    upsert() only touches the in-memory cache, which stays authoritative for
    reads. save() flushes dirty rows; rows that fail to flush stay dirty.
    """

    def __init__(self, db: PostgresConnection = None):
        self.db = db or PostgresConnection()
        self._cache = {}
        self._dirty = set()
        self._lock = threading.Lock()

    def find(self, word: str, language: str) -> WordRecord | None:
        with self._lock:
            cached = self._cache.get((word, language))
        if cached is not None:
            return cached
        with self.db.lock:
            try:
                with self.db.conn.cursor(cursor_factory=RealDictCursor) as cur:
                    cur.execute("""
                        SELECT * FROM vocabulary WHERE word = %s AND language = %s
                    """, (word, language))
                    row = cur.fetchone()
            except Exception as e:
                logger.error(f"Error loading word {word} ({language}): {e}")
                self.db.conn.rollback()
                raise
        if row is None:
            return None
        record = _row_to_record(row)
        with self._lock:
            # A concurrent upsert wins over the row just read
            return self._cache.setdefault(record.key, record)

    def _fetch(self, query: str, params: tuple) -> list[dict]:
        with self.db.lock:
            try:
                with self.db.conn.cursor(cursor_factory=RealDictCursor) as cur:
                    cur.execute(query, params)
                    return cur.fetchall()
            except Exception as e:
                logger.error(f"Error querying vocabulary: {e}")
                self.db.conn.rollback()
                raise

    def find_all_by_status(self, language: str, status: str) -> set[str]:
        rows = self._fetch("""
            SELECT word FROM vocabulary WHERE language = %s AND status = %s
        """, (language, status))
        words = {row['word'] for row in rows}
        with self._lock:
            for record in self._cache.values():
                if record.language != language:
                    continue
                if record.status_kind == status:
                    words.add(record.word)
                else:
                    words.discard(record.word)
        return words

    def due_before(self, language: str, timestamp: datetime) -> list[WordRecord]:
        rows = self._fetch("""
            SELECT * FROM vocabulary
            WHERE language = %s AND next_review <= %s
            ORDER BY next_review ASC, created_at ASC
        """, (language, timestamp))
        merged = {}
        with self._lock:
            for row in rows:
                key = (row['word'], row['language'])
                merged[key] = self._cache.get(key) or _row_to_record(row)
            for key, record in self._cache.items():
                if record.language == language and key not in merged:
                    merged[key] = record
        due = [r for r in merged.values() if r.next_review <= timestamp]
        return sorted(due, key=lambda r: r.next_review)

    def upsert(self, record: WordRecord) -> None:
        with self._lock:
            self._cache[record.key] = record
            self._dirty.add(record.key)

    def save(self) -> None:
        with self._lock:
            pending = [self._cache[key] for key in self._dirty]
            self._dirty.clear()
        if not pending:
            return
        rows = [(r.word, r.language, r.status_kind, r.severity, r.repetitions,
                 r.previous_interval, r.last_practiced, r.next_review) for r in pending]
        with self.db.lock:
            try:
                with self.db.conn.cursor() as cur:
                    execute_batch(cur, """
                        INSERT INTO vocabulary (word, language, status, severity, repetitions,
                                                previous_interval, last_practiced, next_review)
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                        ON CONFLICT (word, language) DO UPDATE SET
                            status = EXCLUDED.status,
                            severity = EXCLUDED.severity,
                            repetitions = EXCLUDED.repetitions,
                            previous_interval = EXCLUDED.previous_interval,
                            last_practiced = EXCLUDED.last_practiced,
                            next_review = EXCLUDED.next_review
                    """, rows)
                self.db.conn.commit()
            except Exception as e:
                logger.error(f"Error saving {len(rows)} vocabulary rows: {e}")
                self.db.conn.rollback()
                with self._lock:
                    self._dirty.update(r.key for r in pending)
                raise
        logger.debug(f"Saved {len(rows)} vocabulary rows")


class PostgresContactRepository(ContactRepository):
    """PostgreSQL-based contact storage."""

    def __init__(self, db: PostgresConnection = None):
        self.db = db or PostgresConnection()

    def get_contact(self, contact_id: str) -> Contact | None:
        with self.db.lock:
            try:
                with self.db.conn.cursor(cursor_factory=RealDictCursor) as cur:
                    cur.execute("SELECT * FROM contacts WHERE id = %s", (contact_id,))
                    row = cur.fetchone()
            except Exception as e:
                logger.error(f"Error getting contact {contact_id}: {e}")
                self.db.conn.rollback()
                return None
        return Contact.from_dict(dict(row)) if row else None

    def list_contacts(self, language: str = None) -> list[Contact]:
        with self.db.lock:
            try:
                with self.db.conn.cursor(cursor_factory=RealDictCursor) as cur:
                    if language:
                        cur.execute("""
                            SELECT * FROM contacts WHERE language = %s ORDER BY name
                        """, (language,))
                    else:
                        cur.execute("SELECT * FROM contacts ORDER BY name")
                    rows = cur.fetchall()
            except Exception as e:
                logger.error(f"Error listing contacts: {e}")
                self.db.conn.rollback()
                return []
        return [Contact.from_dict(dict(row)) for row in rows]

    def save_contact(self, contact: Contact) -> None:
        with self.db.lock:
            try:
                with self.db.conn.cursor() as cur:
                    cur.execute("""
                        INSERT INTO contacts (id, name, language, personality, voice, birthday, last_call_time)
                        VALUES (%s, %s, %s, %s, %s, %s, %s)
                        ON CONFLICT (id) DO UPDATE SET
                            name = EXCLUDED.name,
                            language = EXCLUDED.language,
                            personality = EXCLUDED.personality,
                            voice = EXCLUDED.voice,
                            birthday = EXCLUDED.birthday,
                            last_call_time = EXCLUDED.last_call_time
                    """, (contact.id, contact.name, contact.language, contact.personality,
                          contact.voice, contact.birthday, contact.last_call_time))
                self.db.conn.commit()
            except Exception as e:
                logger.error(f"Error saving contact {contact.id}: {e}")
                self.db.conn.rollback()
                raise

    def update_last_call_time(self, contact_id: str, when: datetime) -> None:
        with self.db.lock:
            try:
                with self.db.conn.cursor() as cur:
                    cur.execute("""
                        UPDATE contacts SET last_call_time = %s WHERE id = %s
                    """, (when, contact_id))
                self.db.conn.commit()
            except Exception as e:
                logger.error(f"Error updating last call time for {contact_id}: {e}")
                self.db.conn.rollback()
                raise
