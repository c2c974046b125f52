"""
JSON utilities for cleaning and parsing LLM responses.
"""

import json
from typing import Any, Optional


def clean_json_response(response: str) -> str:
    """Clean LLM response by removing code block markers.

    Args:
        response: Raw LLM response

    Returns:
        Cleaned JSON string
    """
    response = response.strip()

    if response.startswith('```json'):
        response = response[7:]
    elif response.startswith('```'):
        response = response[3:]

    if response.endswith('```'):
        response = response[:-3]

    return response.strip()


def parse_json_object(response: str) -> Optional[dict]:
    """Parse an LLM response expected to hold a single JSON object.

    Returns None when the response is not valid JSON or not an object.
    """
    try:
        data: Any = json.loads(clean_json_response(response))
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None
