"""
Shared pytest fixtures for Gemini proxy tests.
"""

import pytest
import sys
import importlib.util
from pathlib import Path

# Project root for finding Cloud Function modules
PROJECT_ROOT = Path(__file__).parent.parent

if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


def _load_module_from_path(module_name: str, file_path: Path):
    """Load a module from a specific file path."""
    spec = importlib.util.spec_from_file_location(module_name, file_path)
    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    spec.loader.exec_module(module)
    return module


# Load the Cloud Function module with a unique name at module load time
_gemini_proxy_module = _load_module_from_path(
    'gemini_proxy_main',
    PROJECT_ROOT / 'gemini-proxy' / 'main.py'
)

SUPABASE_URL = 'https://project.supabase.co'
SUPABASE_USER_URL = f'{SUPABASE_URL}/auth/v1/user'
GEMINI_URL = (
    'https://generativelanguage.googleapis.com/v1beta/models/'
    'gemini-1.5-flash-latest:generateContent'
)


# ============================================================================
# Gemini Proxy Function Fixtures
# ============================================================================

@pytest.fixture
def proxy_module():
    """Returns the loaded gemini-proxy module."""
    return _gemini_proxy_module


@pytest.fixture
def proxy_config():
    """A fully configured ProxyConfig."""
    return _gemini_proxy_module.ProxyConfig(
        supabase_url=SUPABASE_URL,
        supabase_anon_key='anon-key',
        gemini_api_key='test-gemini-key',
    )


@pytest.fixture
def verify_user():
    """Returns verify_user function from gemini-proxy."""
    return _gemini_proxy_module.verify_user


@pytest.fixture
def fetch_reference_page():
    """Returns fetch_reference_page function from gemini-proxy."""
    return _gemini_proxy_module.fetch_reference_page


@pytest.fixture
def augment_prompt():
    """Returns augment_prompt function from gemini-proxy."""
    return _gemini_proxy_module.augment_prompt


@pytest.fixture
def call_gemini_api():
    """Returns call_gemini_api function from gemini-proxy."""
    return _gemini_proxy_module.call_gemini_api


@pytest.fixture
def handle_request():
    """Returns handle_request function from gemini-proxy."""
    return _gemini_proxy_module.handle_request


@pytest.fixture
def call_gemini():
    """Returns main entry point from gemini-proxy."""
    return _gemini_proxy_module.call_gemini


# ============================================================================
# Request / payload fixtures
# ============================================================================

@pytest.fixture
def mock_flask_request():
    """Factory for creating mock Flask request objects."""
    class MockRequest:
        def __init__(self, json_data=None, method='POST', headers=None):
            self._json = json_data
            self.method = method
            self.headers = headers if headers is not None else {'Authorization': 'Bearer user-jwt'}
            self.data = b''

        def get_json(self, force=False, silent=False):
            return self._json

    return MockRequest


@pytest.fixture
def make_payload():
    """Factory for Gemini generateContent payloads."""
    def _make(text, **extra):
        payload = {'contents': [{'role': 'user', 'parts': [{'text': text}]}]}
        payload.update(extra)
        return payload

    return _make


@pytest.fixture
def sample_page_html():
    """A reference page with boilerplate around the content."""
    return """
    <!DOCTYPE html>
    <html>
    <head>
        <title>Spring Campaign</title>
        <style>body { color: red; }</style>
        <script>window.dataLayer = [];</script>
    </head>
    <body>
        <header>Site Header</header>
        <nav><a href="/">Home</a> <a href="/shop">Shop</a></nav>
        <main>
            <h1>春の新商品</h1>
            <p>Fresh   spring   lineup.</p>
        </main>
        <footer>Copyright 2024</footer>
    </body>
    </html>
    """


@pytest.fixture
def gemini_success_response():
    """Sample Gemini generateContent response."""
    return {
        'candidates': [{
            'content': {'role': 'model', 'parts': [{'text': '広告コピー案です。'}]},
            'finishReason': 'STOP',
        }],
        'usageMetadata': {'promptTokenCount': 12, 'candidatesTokenCount': 8, 'totalTokenCount': 20},
    }
