"""
Prompt processing utilities for the Gemini proxy.

The client sends a Gemini `generateContent` payload. The only field we read
or rewrite is contents[0].parts[0].text. When that prompt carries a
reference URL under the "## 参考URL" heading, the fetched page is reduced
to plain text and appended under "## 参考URLのページ内容の抜粋".
"""

import copy
import re
from typing import Optional, Tuple

from bs4 import BeautifulSoup

REFERENCE_URL_HEADING = '## 参考URL'
EXCERPT_HEADING = '## 参考URLのページ内容の抜粋'

# Hard character cutoff for the appended page excerpt
MAX_EXCERPT_LENGTH = 4000

# Elements that carry navigation/boilerplate rather than page content
NOISE_TAGS = ['script', 'style', 'nav', 'footer', 'header']

REFERENCE_URL_PATTERN = re.compile(re.escape(REFERENCE_URL_HEADING) + r'\n(https?://[^\s]+)')

PROMPT_TEXT_PATH = 'contents[0].parts[0].text'


def get_prompt_text(payload) -> Tuple[Optional[str], Optional[dict]]:
    """
    Read the prompt text from a Gemini request payload.

    Args:
        payload: Parsed JSON body of the request

    Returns:
        Tuple of (text, error). error is a dict with 'stage' and 'message'
        when the payload does not have a string at contents[0].parts[0].text.

    Examples:
        >>> get_prompt_text({'contents': [{'parts': [{'text': 'Hi'}]}]})
        ('Hi', None)
    """
    def malformed(reason):
        return None, {
            'stage': 'request',
            'message': f'Malformed request: {reason}',
        }

    if not isinstance(payload, dict):
        return malformed('body must be a JSON object')

    contents = payload.get('contents')
    if not isinstance(contents, list) or not contents:
        return malformed('contents must be a non-empty list')

    if not isinstance(contents[0], dict):
        return malformed('contents[0] must be an object')

    parts = contents[0].get('parts')
    if not isinstance(parts, list) or not parts:
        return malformed('contents[0].parts must be a non-empty list')

    if not isinstance(parts[0], dict) or 'text' not in parts[0]:
        return malformed(f'{PROMPT_TEXT_PATH} is missing')

    text = parts[0]['text']
    if not isinstance(text, str):
        return malformed(f'{PROMPT_TEXT_PATH} must be a string')

    return text, None


def set_prompt_text(payload: dict, text: str) -> dict:
    """Return a copy of the payload with contents[0].parts[0].text replaced."""
    updated = copy.deepcopy(payload)
    updated['contents'][0]['parts'][0]['text'] = text
    return updated


def extract_reference_url(prompt: str) -> Optional[str]:
    """
    Extract the reference URL that follows the "## 参考URL" heading.

    Only the first occurrence is used. The capture stops at the first
    whitespace character, so trailing newlines are never included.

    Examples:
        >>> extract_reference_url('## 参考URL\\nhttps://example.com/page\\n')
        'https://example.com/page'

        >>> extract_reference_url('No heading here') is None
        True
    """
    if not prompt:
        return None

    match = REFERENCE_URL_PATTERN.search(prompt)
    return match.group(1) if match else None


def extract_page_excerpt(html: str, max_length: int = MAX_EXCERPT_LENGTH) -> str:
    """
    Reduce an HTML document to a plain-text excerpt.

    - Removes script, style, nav, footer and header elements
    - Takes the text of <body> (everything outside <head> if there is no body)
    - Collapses every run of 2+ whitespace characters into one space
    - Strips and cuts at max_length characters (no word boundary handling)
    """
    if not html:
        return ''

    soup = BeautifulSoup(html, 'html.parser')

    for element in soup.find_all(NOISE_TAGS):
        # Nested noise (nav inside header) goes with its ancestor
        if not element.decomposed:
            element.decompose()

    # html.parser only builds a <body> when the markup has one
    if soup.body is None:
        for element in soup.find_all(['head', 'title']):
            if not element.decomposed:
                element.decompose()

    root = soup.body or soup
    text = root.get_text()

    # A single newline or space is kept as-is; only runs are collapsed
    text = re.sub(r'\s\s+', ' ', text).strip()

    return text[:max_length]


def append_page_excerpt(prompt: str, excerpt: str) -> str:
    """Append the excerpt section to the prompt. Empty excerpts add nothing."""
    if not excerpt:
        return prompt
    return f"{prompt}\n\n{EXCERPT_HEADING}\n{excerpt}"
