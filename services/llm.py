"""
OpenAI client access shared by the executive summary and GEO analysis.
"""

import re

from openai import OpenAI

from services import config


class MissingAPIKeyError(Exception):
    """Raised when OPENAI_API_KEY is not configured"""
    pass


def get_openai_client() -> OpenAI:
    """Get OpenAI client with API key from environment."""
    if not config.OPENAI_API_KEY:
        raise MissingAPIKeyError(
            "OPENAI_API_KEY environment variable is not set. Add an OpenAI API key to enable AI analysis."
        )
    return OpenAI(api_key=config.OPENAI_API_KEY)


def strip_code_fences(text: str) -> str:
    """Remove a surrounding ```json ... ``` fence that models sometimes add."""
    cleaned = (text or "").strip()
    cleaned = re.sub(r"^```(?:json)?\s*", "", cleaned)
    cleaned = re.sub(r"\s*```$", "", cleaned)
    return cleaned.strip()
