"""Console UI for ringback application."""

import time

from core.models import WordStatus
from cli.api_client import RingbackAPIClient

HELP = """
Commands:
  /contacts          list contacts
  /call <id>         call a contact
  /hangup            end the call
  /due [language]    words due for review
  /words [language]  struggling and proficient words
  /stats             Gemini usage
  /help              this help
  /quit              exit
Anything else is said to the contact while a call is listening.
Press enter on an empty line to refresh.
"""


def format_status(status: dict) -> str:
    if status['status'] == WordStatus.PROFICIENT:
        return 'proficient'
    return f"struggling ({status['severity']})"


class ConsoleUI:
    """Console user interface for ringback application."""

    def __init__(self, client: RingbackAPIClient, language: str = 'es', poll_seconds: float = 0.5):
        self.client = client
        self.language = language
        self.poll_seconds = poll_seconds
        self.next_index = 0
        self.in_call = False

    def print_spoken(self, status: dict):
        """Print lines the contact said since the last poll."""
        name = status['contact']['name'] if status.get('contact') else 'Contact'
        for line in status['spoken']:
            print(f"  {name} [{line['language']}]: {line['text']}")
        self.next_index = status['next_index']

    def print_word_statuses(self, words: dict):
        if not words:
            return
        print('  ' + ', '.join(f"{w}: {format_status(s)}" for w, s in sorted(words.items())))

    def refresh(self) -> dict:
        status = self.client.call_status(since=self.next_index)
        self.print_spoken(status)
        if self.in_call and not status['active']:
            print('*** Call ended ***')
            self.in_call = False
        return status

    def wait_until_listening(self, timeout: float = 30.0) -> dict:
        """Poll until the call is listening, printing whatever is said meanwhile."""
        deadline = time.time() + timeout
        status = self.refresh()
        while status['active'] and not status['listening'] and time.time() < deadline:
            time.sleep(self.poll_seconds)
            status = self.refresh()
        if status['active'] and status['listening']:
            print('  (listening...)')
        return status

    def list_contacts(self):
        contacts = self.client.list_contacts()
        if not contacts:
            print('No contacts yet. Seed some with scripts/seed_contacts.py')
            return
        for c in contacts:
            last = c['last_call_time'] or 'never'
            print(f"  {c['id']:<12} {c['name']:<20} {c['language']:<6} last call: {last}")

    def start_call(self, contact_id: str):
        status = self.client.start_call(contact_id)
        self.next_index = status['next_index']
        self.in_call = True
        self.language = status['contact']['language']
        print(f"Calling {status['contact']['name']}...")
        self.wait_until_listening()

    def say(self, text: str):
        if not self.client.say(text):
            print('  (not listening right now, try again)')
            self.refresh()
            return
        # The window stays open until it times out; wait for it to close
        status = self.refresh()
        while status['active'] and status['listening']:
            time.sleep(self.poll_seconds)
            status = self.refresh()
        status = self.wait_until_listening()
        self.print_word_statuses(status['word_statuses'])

    def print_due(self, language: str):
        result = self.client.get_due_words(language)
        print(f"{result['total']} words due in {language}: {', '.join(result['words']) or '-'}")

    def print_words(self, language: str):
        for status in (WordStatus.STRUGGLING, WordStatus.PROFICIENT):
            result = self.client.get_words(language, status)
            print(f"{status} ({result['total']}): {', '.join(result['words']) or '-'}")

    def print_stats(self):
        stats = self.client.get_stats()
        if not stats:
            print('No stats yet')
            return
        print(f"{stats['model']}: {stats['calls']} calls, {stats['failures']} failed, "
              f"avg {stats['avg_ms']}ms")

    def run(self, call: str = None):
        health = self.client.health_check()
        print(f"Connected to ringback server (call active: {health['call_active']})")
        print(HELP)
        if call:
            self.start_call(call)
        while True:
            line = input('> ').strip()
            if not line:
                self.refresh()
                continue
            if line.startswith('/'):
                command, _, arg = line.partition(' ')
                arg = arg.strip()
                if command == '/quit':
                    if self.in_call:
                        self.client.end_call()
                    return
                elif command == '/contacts':
                    self.list_contacts()
                elif command == '/call' and arg:
                    self.start_call(arg)
                elif command == '/hangup':
                    self.client.end_call()
                    self.in_call = False
                    print('*** Call ended ***')
                elif command == '/due':
                    self.print_due(arg or self.language)
                elif command == '/words':
                    self.print_words(arg or self.language)
                elif command == '/stats':
                    self.print_stats()
                else:
                    print(HELP)
                continue
            if self.in_call:
                self.say(line)
            else:
                result = self.client.practice(line, self.language)
                self.print_word_statuses(result['words'])
