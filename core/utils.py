"""Utility functions for ringback application."""

import re

_NON_ALNUM = re.compile(r'[\W_]+', re.UNICODE)


def tokenize(text: str) -> set[str]:
    """Split an utterance into the set of candidate words it contains.

    Words are case-folded and split on any non-alphanumeric boundary.
    Single characters and anything containing a digit are dropped.
    """
    words = set()
    if not text:
        return words
    for token in _NON_ALNUM.split(text.lower()):
        token = token.strip()
        if len(token) > 1 and not any(ch.isdigit() for ch in token):
            words.add(token)
    return words


def estimate_speech_seconds(text: str, seconds_per_word: float) -> float:
    """Rough playback duration for a line of speech."""
    return len(text.split()) * seconds_per_word
