"""File-based storage implementation."""

import json
import logging
import os
import threading
from datetime import datetime

from core.interfaces import VocabularyRepository, ContactRepository
from core.models import WordRecord, Contact

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = os.path.expanduser('~/.config/ringback/config.json')


def load_config(config_file: str = None) -> dict:
    """Load runtime settings. Returns an empty dict if the file is missing."""
    config_file = config_file or DEFAULT_CONFIG_FILE
    if not os.path.exists(config_file):
        logger.info(f"No config file at {config_file}, using defaults")
        return {}
    with open(config_file, 'r') as f:
        return json.load(f)


def default_state_dir() -> str:
    # Project root is one level up from server/
    project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    return os.environ.get('RINGBACK_STATE_DIR', project_root)


def _write_json(path: str, data) -> None:
    """Write through a temp file so a crash never leaves half a file."""
    tmp_path = f"{path}.tmp"
    with open(tmp_path, 'w') as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
    os.replace(tmp_path, path)


def _read_json_list(path: str) -> list:
    if not os.path.exists(path):
        return []
    try:
        with open(path, 'r') as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.error(f"Could not read {path}: {e}")
        return []
    return data if isinstance(data, list) else []


class FileVocabularyRepository(VocabularyRepository):
    """Vocabulary kept in memory and written to a JSON file on save()."""

    def __init__(self, state_dir: str = None):
        self.state_dir = state_dir or default_state_dir()
        self.path = os.path.join(self.state_dir, 'ringback_vocabulary.json')
        self._lock = threading.Lock()
        # Serializes whole saves so an older snapshot never lands last
        self._write_lock = threading.Lock()
        self._records = {}  # (word, language) -> WordRecord, in insertion order
        for item in _read_json_list(self.path):
            try:
                record = WordRecord.from_dict(item)
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping bad vocabulary entry {item!r}: {e}")
                continue
            self._records[record.key] = record

    def find(self, word: str, language: str) -> WordRecord | None:
        with self._lock:
            return self._records.get((word, language))

    def find_all_by_status(self, language: str, status: str) -> set[str]:
        with self._lock:
            return {r.word for r in self._records.values()
                    if r.language == language and r.status_kind == status}

    def upsert(self, record: WordRecord) -> None:
        with self._lock:
            self._records[record.key] = record

    def due_before(self, language: str, timestamp: datetime) -> list[WordRecord]:
        with self._lock:
            due = [r for r in self._records.values()
                   if r.language == language and r.next_review <= timestamp]
        return sorted(due, key=lambda r: r.next_review)

    def all_records(self, language: str = None) -> list[WordRecord]:
        with self._lock:
            return [r for r in self._records.values()
                    if language is None or r.language == language]

    def save(self) -> None:
        with self._write_lock:
            with self._lock:
                snapshot = [r.to_dict() for r in self._records.values()]
            os.makedirs(self.state_dir, exist_ok=True)
            _write_json(self.path, snapshot)


class FileContactRepository(ContactRepository):
    """Contacts stored in a JSON file."""

    def __init__(self, state_dir: str = None):
        self.state_dir = state_dir or default_state_dir()
        self.path = os.path.join(self.state_dir, 'ringback_contacts.json')
        self._lock = threading.Lock()

    def _load(self) -> dict[str, Contact]:
        contacts = {}
        for item in _read_json_list(self.path):
            try:
                contact = Contact.from_dict(item)
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping bad contact entry {item!r}: {e}")
                continue
            contacts[contact.id] = contact
        return contacts

    def _save(self, contacts: dict[str, Contact]) -> None:
        os.makedirs(self.state_dir, exist_ok=True)
        _write_json(self.path, [c.to_dict() for c in contacts.values()])

    def get_contact(self, contact_id: str) -> Contact | None:
        with self._lock:
            return self._load().get(contact_id)

    def list_contacts(self, language: str = None) -> list[Contact]:
        with self._lock:
            contacts = self._load().values()
        return [c for c in contacts if language is None or c.language == language]

    def save_contact(self, contact: Contact) -> None:
        with self._lock:
            contacts = self._load()
            contacts[contact.id] = contact
            self._save(contacts)

    def update_last_call_time(self, contact_id: str, when: datetime) -> None:
        with self._lock:
            contacts = self._load()
            contact = contacts.get(contact_id)
            if contact is None:
                logger.warning(f"Cannot update last call time, unknown contact {contact_id}")
                return
            contact.last_call_time = when
            self._save(contacts)
