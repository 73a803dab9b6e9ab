"""Gemini text generation provider."""

import asyncio
import logging
import time

import google.generativeai as genai

from core.interfaces import TextGenerationService

logger = logging.getLogger(__name__)

LANGUAGE_NAMES = {
    'en': 'English',
    'es': 'Spanish',
    'fr': 'French',
    'de': 'German',
    'it': 'Italian',
    'pt': 'Portuguese',
    'ja': 'Japanese',
    'zh': 'Chinese',
    'sr': 'Serbian',
}


def language_name(code: str) -> str:
    """English name for a language code, e.g. 'es-MX' -> 'Spanish'."""
    base = code.split('-')[0].lower()
    return LANGUAGE_NAMES.get(base, code)


class GeminiProvider(TextGenerationService):
    """Gemini implementation of the text generation service."""

    def __init__(self, api_key: str, model_name: str = 'gemini-2.0-flash'):
        genai.configure(api_key=api_key)
        self.model = genai.GenerativeModel(model_name)
        self.model_name = model_name
        self.stats = {'calls': 0, 'failures': 0, 'total_ms': 0}

    def _execute(self, prompt: str) -> tuple[str, int]:
        start_time = time.time()
        response = self.model.generate_content(prompt)
        end_time = time.time()
        ms = int((end_time - start_time) * 1000)
        return (response.text, ms)

    async def generate(self, prompt: str, language: str) -> str | None:
        full_prompt = f"""
            {prompt.strip()}

            Respond only in {language_name(language)}.
        """
        self.stats['calls'] += 1
        try:
            # Run in executor to not block the event loop
            loop = asyncio.get_event_loop()
            text, ms = await loop.run_in_executor(None, lambda: self._execute(full_prompt))
        except Exception as e:
            self.stats['failures'] += 1
            logger.warning(f"Gemini generation failed ({self.model_name}): {type(e).__name__}: {e}")
            return None

        self.stats['total_ms'] += ms
        text = (text or '').strip()
        logger.info(f"Gemini reply in {language}: {len(text)} chars, {ms}ms")
        return text or None

    def get_stats(self) -> dict:
        calls = self.stats['calls']
        return {
            **self.stats,
            'model': self.model_name,
            'avg_ms': round(self.stats['total_ms'] / calls, 1) if calls > 0 else 0
        }
