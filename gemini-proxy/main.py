"""
Gemini Proxy Cloud Function

Forwards authenticated Gemini generateContent requests from the web client,
optionally enriching the prompt with the content of a reference page.

Responsibilities:
- Verify the caller against Supabase Auth
- Find the reference URL under the "## 参考URL" heading in the prompt
- Fetch that page (5s bound) and append a plain-text excerpt to the prompt
- Call Gemini with the server-held API key and relay its JSON response

Does NOT:
- Implement authentication (Supabase's job)
- Cache, retry or rate-limit Gemini calls
- Persist anything between requests
"""

import functions_framework
import requests
from bs4 import UnicodeDammit
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
import json
import os
import sys
import time
import traceback
from typing import NamedTuple, Optional

# Add shared module to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))
from shared.prompt_utils import (
    extract_reference_url,
    extract_page_excerpt,
    append_page_excerpt,
    get_prompt_text,
    set_prompt_text,
)

GEMINI_API_BASE = 'https://generativelanguage.googleapis.com/v1beta/models'
DEFAULT_GEMINI_MODEL = 'gemini-1.5-flash-latest'
DEFAULT_AUTH_TIMEOUT = 10
DEFAULT_UPSTREAM_TIMEOUT = 60

# Reference page fetch limits
PAGE_FETCH_TIMEOUT = 5
MAX_PAGE_BYTES = 2 * 1024 * 1024
USER_AGENT = 'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36'

AUTH_REQUIRED_MESSAGE = 'Authentication required'

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Headers': 'authorization, x-client-info, apikey, content-type',
    'Access-Control-Allow-Methods': 'POST, OPTIONS',
}


def _timeout_from_env(value, default):
    try:
        timeout = float(value)
    except (TypeError, ValueError):
        return default
    return timeout if timeout > 0 else default


class ProxyConfig(NamedTuple):
    """Process-wide settings, read once at startup."""
    supabase_url: Optional[str]
    supabase_anon_key: Optional[str]
    gemini_api_key: Optional[str]
    gemini_model: str = DEFAULT_GEMINI_MODEL
    auth_timeout: float = DEFAULT_AUTH_TIMEOUT
    upstream_timeout: float = DEFAULT_UPSTREAM_TIMEOUT

    @classmethod
    def from_env(cls, environ=None) -> 'ProxyConfig':
        environ = os.environ if environ is None else environ
        return cls(
            supabase_url=environ.get('SUPABASE_URL') or None,
            supabase_anon_key=environ.get('SUPABASE_ANON_KEY') or None,
            gemini_api_key=environ.get('GEMINI_API_KEY') or None,
            gemini_model=environ.get('GEMINI_MODEL') or DEFAULT_GEMINI_MODEL,
            auth_timeout=_timeout_from_env(environ.get('AUTH_TIMEOUT_SECONDS'), DEFAULT_AUTH_TIMEOUT),
            upstream_timeout=_timeout_from_env(environ.get('GEMINI_TIMEOUT_SECONDS'), DEFAULT_UPSTREAM_TIMEOUT),
        )


# Configuration
CONFIG = ProxyConfig.from_env()


def verify_user(authorization: Optional[str], config: ProxyConfig) -> tuple:
    """
    Resolve the caller via Supabase Auth. Returns (user, error).

    (None, None) means "no authenticated user" and maps to 401.
    An error dict means the identity service itself could not be used.
    """
    if not authorization:
        return None, None

    if not config.supabase_url or not config.supabase_anon_key:
        return None, {
            'stage': 'config',
            'message': 'SUPABASE_URL and SUPABASE_ANON_KEY must be configured'
        }

    try:
        response = requests.get(
            f"{config.supabase_url.rstrip('/')}/auth/v1/user",
            headers={
                'apikey': config.supabase_anon_key,
                'Authorization': authorization,
            },
            timeout=config.auth_timeout
        )
    except requests.exceptions.Timeout:
        return None, {'stage': 'auth', 'message': 'Auth service request timed out'}
    except requests.exceptions.RequestException as e:
        return None, {'stage': 'auth', 'message': f'Auth service request failed: {str(e)}'}

    # Invalid or expired token
    if 400 <= response.status_code < 500:
        return None, None

    if not response.ok:
        return None, {'stage': 'auth', 'message': f'Auth service error: {response.status_code}'}

    try:
        user = response.json()
    except ValueError:
        return None, None

    if not isinstance(user, dict) or not user.get('id'):
        return None, None

    return user, None


def _is_html(content_type: str) -> bool:
    content_type = content_type.lower()
    return 'html' in content_type or 'xml' in content_type


def _read_body(response, deadline: float, clock=time.monotonic) -> bytes:
    """Read at most MAX_PAGE_BYTES, giving up once the deadline has passed."""
    chunks = []
    size = 0
    for chunk in response.iter_content(chunk_size=8192):
        if clock() > deadline:
            raise requests.exceptions.ReadTimeout('Page fetch exceeded deadline')
        chunks.append(chunk)
        size += len(chunk)
        if size >= MAX_PAGE_BYTES:
            break
    return b''.join(chunks)[:MAX_PAGE_BYTES]


def _decode_body(body: bytes, headers) -> str:
    """
    Decode the page body.

    An explicit charset in Content-Type wins. Otherwise UTF-8 is tried
    before the page's own <meta charset> and bs4's sniffing.
    """
    known_encodings = []
    # requests reports ISO-8859-1 for any text/* without a charset parameter
    if 'charset' in headers.get('Content-Type', '').lower():
        encoding = requests.utils.get_encoding_from_headers(headers)
        if encoding:
            known_encodings.append(encoding)

    dammit = UnicodeDammit(
        body,
        known_definite_encodings=known_encodings,
        user_encodings=['utf-8'],
        is_html=True
    )
    return dammit.unicode_markup or ''


def _fetch_page(url: str, deadline: float) -> tuple:
    """Blocking fetch; every socket wait is limited to the time left before the deadline."""
    def remaining():
        return max(deadline - time.monotonic(), 0.01)

    try:
        headers = {
            'User-Agent': USER_AGENT,
            'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
        }

        with requests.get(url, headers=headers, timeout=(remaining(), remaining()),
                          allow_redirects=True, stream=True) as response:
            if time.monotonic() > deadline:
                raise requests.exceptions.ReadTimeout('Page fetch exceeded deadline')

            response.raise_for_status()

            content_type = response.headers.get('Content-Type', '')
            if content_type and not _is_html(content_type):
                return None, f'Unsupported content type: {content_type}'

            body = _read_body(response, deadline)

    except requests.exceptions.Timeout:
        return None, 'Request timed out'
    except requests.exceptions.HTTPError as e:
        return None, f'HTTP error: {e.response.status_code}'
    except requests.exceptions.RequestException as e:
        return None, f'Request failed: {str(e)}'

    return _decode_body(body, response.headers), None


def fetch_reference_page(url: str, timeout: float = PAGE_FETCH_TIMEOUT) -> tuple:
    """
    Fetch the reference page. Returns (html, error).

    The whole fetch (connect, headers and body) is bounded by `timeout`
    seconds of wall-clock time. A worker still blocked on a socket when the
    bound expires is abandoned and ends on its own socket timeout.
    """
    executor = ThreadPoolExecutor(max_workers=1)
    future = executor.submit(_fetch_page, url, time.monotonic() + timeout)
    try:
        return future.result(timeout=timeout)
    except FuturesTimeoutError:
        return None, 'Request timed out'
    finally:
        executor.shutdown(wait=False)


def augment_prompt(prompt: str, url: Optional[str]) -> dict:
    """
    Append an excerpt of the reference page to the prompt.

    Never raises. Returns either
        {'augmented': True, 'prompt': <prompt + excerpt>, 'excerpt': ...}
    or
        {'augmented': False, 'prompt': <original prompt>, 'reason': ...}
    Callers always continue with result['prompt'].
    """
    if not url:
        return {'augmented': False, 'prompt': prompt, 'reason': 'No reference URL'}

    try:
        html, fetch_error = fetch_reference_page(url)
        if fetch_error:
            print(f"URL fetch error for {url}: {fetch_error}")
            return {'augmented': False, 'prompt': prompt, 'reason': fetch_error}

        excerpt = extract_page_excerpt(html)
    except Exception as e:
        print(f"URL fetch error for {url}: {e}")
        return {'augmented': False, 'prompt': prompt, 'reason': str(e)}

    if not excerpt:
        return {'augmented': False, 'prompt': prompt, 'reason': 'Page has no text content'}

    print(f"Appended {len(excerpt)} chars from {url}")
    return {
        'augmented': True,
        'prompt': append_page_excerpt(prompt, excerpt),
        'excerpt': excerpt
    }


def call_gemini_api(payload: dict, config: ProxyConfig) -> tuple:
    """POST the payload to Gemini generateContent. Returns (data, error)."""
    if not config.gemini_api_key:
        return None, {'stage': 'config', 'message': 'GEMINI_API_KEY not configured'}

    try:
        response = requests.post(
            f"{GEMINI_API_BASE}/{config.gemini_model}:generateContent",
            params={'key': config.gemini_api_key},
            json=payload,
            timeout=config.upstream_timeout
        )
    except requests.exceptions.Timeout:
        return None, {'stage': 'upstream', 'message': 'Gemini API request timed out'}
    except requests.exceptions.RequestException as e:
        # The message can carry the URL, which includes the key
        message = str(e).replace(config.gemini_api_key, '***')
        return None, {'stage': 'upstream', 'message': f'Gemini API request failed: {message}'}

    if not response.ok:
        return None, {
            'stage': 'upstream',
            'message': f'Gemini API error: {response.status_code} {response.text}'
        }

    try:
        return response.json(), None
    except ValueError:
        return None, {'stage': 'upstream', 'message': 'Gemini API returned invalid JSON'}


def _json_response(data, status: int) -> tuple:
    headers = {**CORS_HEADERS, 'Content-Type': 'application/json'}
    return (json.dumps(data, ensure_ascii=False), status, headers)


def _failure_response(error: dict) -> tuple:
    """The single place a failed stage becomes a 500."""
    print(f"Request failed at stage '{error['stage']}': {error['message']}")
    return _json_response({'error': error['message']}, 500)


def handle_request(request, config: ProxyConfig) -> tuple:
    """
    Run the proxy pipeline for one request.

    Expected JSON input (other fields are passed through untouched):
    {
        "contents": [{"parts": [{"text": "...\\n## 参考URL\\nhttps://..."}]}],
        "generationConfig": {...}
    }
    """
    # Handle CORS
    if request.method == 'OPTIONS':
        return ('', 204, {**CORS_HEADERS, 'Access-Control-Max-Age': '3600'})

    if request.method != 'POST':
        return _json_response({'error': 'Method not allowed'}, 405)

    user, auth_error = verify_user(request.headers.get('Authorization'), config)
    if auth_error:
        return _failure_response(auth_error)
    if not user:
        return _json_response({'error': AUTH_REQUIRED_MESSAGE}, 401)

    payload = request.get_json(silent=True)
    prompt, request_error = get_prompt_text(payload)
    if request_error:
        return _failure_response(request_error)

    augmentation = augment_prompt(prompt, extract_reference_url(prompt))

    data, upstream_error = call_gemini_api(set_prompt_text(payload, augmentation['prompt']), config)
    if upstream_error:
        return _failure_response(upstream_error)

    return _json_response(data, 200)


@functions_framework.http
def call_gemini(request):
    """Main Cloud Function entry point."""
    try:
        return handle_request(request, CONFIG)
    except Exception as e:
        print(f"Unhandled error: {e}")
        print(traceback.format_exc())
        return _failure_response({'stage': 'processing', 'message': str(e)})
