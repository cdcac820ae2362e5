"""Shared utilities for the Gemini proxy."""

from .prompt_utils import (
    REFERENCE_URL_HEADING,
    EXCERPT_HEADING,
    MAX_EXCERPT_LENGTH,
    NOISE_TAGS,
    get_prompt_text,
    set_prompt_text,
    extract_reference_url,
    extract_page_excerpt,
    append_page_excerpt,
)

__all__ = [
    'REFERENCE_URL_HEADING',
    'EXCERPT_HEADING',
    'MAX_EXCERPT_LENGTH',
    'NOISE_TAGS',
    'get_prompt_text',
    'set_prompt_text',
    'extract_reference_url',
    'extract_page_excerpt',
    'append_page_excerpt',
]
