"""Gemini-backed remote text processor.

A processor is any callable ``(payload, mode) -> RemoteReply``. The pipeline
only depends on that shape; :class:`GeminiProcessor` is the production one.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from typing import Any

from google import genai
from google.genai import types

from story_proofer import DEFAULT_MODEL
from story_proofer.errors import ConfigError
from story_proofer.models import Mode, RemoteReply, Source

logger = logging.getLogger(__name__)

API_KEY_ENV_VARS = ("GEMINI_API_KEY", "GOOGLE_API_KEY", "API_KEY")

CORRECT_PROMPT = """\
You are an AI proofreader with a single, precise task: correct spelling mistakes \
in the 'story' and 'sub-story' fields of the provided JSON array. Follow these rules strictly.

CRITICAL RULES:
1. SPELLING ONLY: Correct only obvious spelling errors.
2. NO GRAMMAR/PUNCTUATION: Do NOT change grammar. Do NOT add, remove, or alter \
punctuation. Do NOT add apostrophes: "SINHAS" stays "SINHAS", "BJP S" stays "BJP S".
3. PRESERVE ALL CONTENT: Do not change names, numbers, acronyms, or the meaning of \
the text. Do not add or remove words. Correct 'ADIMINISTRATION' to 'ADMINISTRATION', \
never to a different word.
4. PROPER NOUNS: Correct obvious misspellings of proper nouns conservatively, \
e.g. 'UTTARAKHANDA' -> 'UTTARAKHAND'.
5. EXACT JSON STRUCTURE: The output MUST be a single, valid, minified JSON array \
with the exact same number of objects and the same 'id' values as the input. \
Each object has the keys "id", "story" and "sub-story". Do not wrap the JSON in markdown.
6. IF NO ERRORS, NO CHANGE: If a field has no spelling errors, return it exactly as it is.

Input Data:
{payload}
"""

FACT_CHECK_PROMPT = """\
You are a careful fact-checker. For each object in the provided JSON array, use \
web search to verify the factual claims made in its 'story' and 'sub-story' fields.

RULES:
1. For each field write a short analysis: state whether the claims are supported, \
contradicted, or unverifiable, and why. Mention names, dates and numbers you checked.
2. Do not rewrite or correct the original text.
3. OUTPUT: a single, valid, minified JSON array with exactly one object per input \
object, using the same 'id' values. Each object has the keys "id", \
"story_analysis" and "sub-story_analysis". Do not wrap the JSON in markdown and \
do not add any text before or after the array.

Input Data:
{payload}
"""


def resolve_api_key(environ: Mapping[str, str] | None = None) -> str:
    """Return the first non-empty key from :data:`API_KEY_ENV_VARS`.

    Raises
    ------
    ConfigError
        If none of the variables is set.
    """
    env = os.environ if environ is None else environ
    for name in API_KEY_ENV_VARS:
        value = (env.get(name) or "").strip()
        if value:
            return value
    raise ConfigError(
        "No Gemini API key configured. Set one of: " + ", ".join(API_KEY_ENV_VARS)
    )


def build_prompt(payload: str, mode: Mode) -> str:
    template = FACT_CHECK_PROMPT if mode is Mode.FACT_CHECK else CORRECT_PROMPT
    return template.format(payload=payload)


def extract_sources(response: Any) -> list[Source]:
    """Collect web citations from a grounded response, in order."""
    sources: list[Source] = []
    for candidate in getattr(response, "candidates", None) or []:
        metadata = getattr(candidate, "grounding_metadata", None)
        for chunk in getattr(metadata, "grounding_chunks", None) or []:
            web = getattr(chunk, "web", None)
            uri = getattr(web, "uri", None)
            if not uri:
                continue
            title = getattr(web, "title", None) or uri
            sources.append(Source(title=str(title), url=str(uri)))
    return sources


class GeminiProcessor:
    """Send one serialized chunk to Gemini and hand back the raw reply.

    CORRECT mode asks for a JSON response. FACT_CHECK mode enables the Google
    Search tool instead, since grounded calls cannot force a JSON mime type,
    and returns the grounding citations alongside the text.
    """

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        *,
        api_key: str | None = None,
        client: Any | None = None,
    ) -> None:
        self.model = model
        self.client = client if client is not None else genai.Client(
            api_key=api_key or resolve_api_key()
        )

    def _config(self, mode: Mode) -> types.GenerateContentConfig:
        if mode is Mode.FACT_CHECK:
            return types.GenerateContentConfig(
                tools=[types.Tool(google_search=types.GoogleSearch())],
            )
        return types.GenerateContentConfig(response_mime_type="application/json")

    def __call__(self, payload: str, mode: Mode) -> RemoteReply:
        response = self.client.models.generate_content(
            model=self.model,
            contents=build_prompt(payload, mode),
            config=self._config(mode),
        )
        text = response.text
        sources = extract_sources(response) if mode is Mode.FACT_CHECK else []
        logger.debug(
            "Gemini %s reply: %d chars, %d sources",
            mode.value, len(text or ""), len(sources),
        )
        return RemoteReply(text=text, sources=sources)
