#!/usr/bin/env python3
"""Seed a few practice contacts into the configured storage."""

import argparse
import os
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from core.models import Contact


def get_seed_contacts() -> list[Contact]:
    """Default contacts, one per practice language."""
    return [
        Contact('lucia', 'Lucía', language='es',
                personality='a cheerful baker in Seville who loves football and gossip',
                voice='es-ES', birthday='1992-04-17'),
        Contact('mateo', 'Mateo', language='es-MX',
                personality='a laid-back surf instructor from Oaxaca',
                voice='es-MX', birthday='1988-11-02'),
        Contact('camille', 'Camille', language='fr',
                personality='a chatty librarian in Lyon with strong opinions about cheese',
                voice='fr-FR', birthday='1995-07-30'),
        Contact('jonas', 'Jonas', language='de',
                personality='a cyclist and amateur astronomer from Hamburg',
                voice='de-DE', birthday='1990-01-21'),
    ]


def get_repository(storage_type: str):
    if storage_type == 'file':
        from server.file_storage import FileContactRepository
        return FileContactRepository()
    from server.postgres_storage import PostgresContactRepository
    return PostgresContactRepository()


def main():
    parser = argparse.ArgumentParser(description='Seed practice contacts')
    parser.add_argument(
        '--storage',
        default=os.environ.get('RINGBACK_STORAGE', 'postgres'),
        choices=['file', 'postgres'],
        help='Storage backend (default: $RINGBACK_STORAGE or postgres)'
    )
    args = parser.parse_args()

    repository = get_repository(args.storage)
    existing = {c.id for c in repository.list_contacts()}
    added = 0
    for contact in get_seed_contacts():
        if contact.id in existing:
            print(f"Skipping {contact.name}, already present")
            continue
        repository.save_contact(contact)
        added += 1
        print(f"Added {contact.name} ({contact.language})")
    print(f"Seeded {added} contacts")
    return 0


if __name__ == '__main__':
    sys.exit(main())
