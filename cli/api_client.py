"""REST API client for ringback server."""

import requests


class RingbackAPIClient:
    """Client for communicating with the ringback REST API."""

    def __init__(self, base_url: str = "http://localhost:8000"):
        self.base_url = base_url.rstrip('/')
        self.session = requests.Session()

    def _get(self, endpoint: str, params: dict = None) -> dict:
        """Make a GET request."""
        response = self.session.get(f"{self.base_url}{endpoint}", params=params or {})
        response.raise_for_status()
        return response.json()

    def _post(self, endpoint: str, data: dict = None) -> dict:
        """Make a POST request."""
        response = self.session.post(f"{self.base_url}{endpoint}", json=data or {})
        response.raise_for_status()
        return response.json()

    def health_check(self) -> dict:
        """Check if the server is running."""
        return self._get("/")

    def list_contacts(self, language: str = None) -> list:
        params = {'language': language} if language else {}
        return self._get("/api/contacts", params)

    def start_call(self, contact_id: str) -> dict:
        return self._post("/api/call/start", {'contact_id': contact_id})

    def end_call(self) -> dict:
        return self._post("/api/call/end")

    def call_status(self, since: int = 0) -> dict:
        return self._get("/api/call/status", {'since': since})

    def say(self, text: str) -> bool:
        """Send a typed utterance. Returns False if the call was not listening."""
        response = self.session.post(
            f"{self.base_url}/api/call/audio",
            data=text.encode('utf-8'),
            headers={'Content-Type': 'application/octet-stream'}
        )
        if response.status_code == 409:
            return False
        response.raise_for_status()
        return True

    def practice(self, text: str, language: str) -> dict:
        return self._post("/api/vocabulary/practice", {'text': text, 'language': language})

    def get_due_words(self, language: str, limit: int = 50) -> dict:
        return self._get("/api/vocabulary/due", {'language': language, 'limit': limit})

    def get_words(self, language: str, status: str) -> dict:
        return self._get("/api/vocabulary/words", {'language': language, 'status': status})

    def get_stats(self) -> dict:
        """Get Gemini API usage statistics."""
        return self._get("/api/stats")
