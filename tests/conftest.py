"""
Pytest configuration and shared fixtures.
"""
import os
import sys
from typing import Callable, List, Optional

import httpx
import pytest

# Add project root to path for imports
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if project_root not in sys.path:
    sys.path.insert(0, project_root)

# Settings validates the key on first use
os.environ.setdefault("OPENAI_API_KEY", "test-api-key")

from medscan.extractors.base import BaseExtractor
from medscan.ir import ExtractionResult
from medscan.storage import BlobStore
from medscan.sync import SyncBridge

WEBHOOK_URL = "https://script.google.com/macros/s/XYZ/exec"


class ScriptedExtractor(BaseExtractor):
    """Extractor returning queued results; Exception instances are raised."""

    def __init__(self, outcomes: List[object]):
        super().__init__(llm=None)
        self.outcomes = list(outcomes)
        self.calls: List[Optional[str]] = []

    def extract(self, payload, mime_type, filename=None):
        self.calls.append(filename)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class RecordingTransport:
    """httpx.MockTransport handler that records requests and replays a response factory."""

    def __init__(self, respond: Callable[[httpx.Request], httpx.Response]):
        self.respond = respond
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.respond(request)


@pytest.fixture
def webhook_url():
    return WEBHOOK_URL


@pytest.fixture
def store(tmp_path):
    return BlobStore(tmp_path / "storage")


@pytest.fixture
def jane_doe():
    return ExtractionResult(patient_name="Jane Doe", uhid="AB123456", source_type="label")


@pytest.fixture
def scripted_extractor():
    return ScriptedExtractor


@pytest.fixture
def make_bridge():
    """Build a SyncBridge over a mock transport; returns (bridge, recorder)."""

    def _make(respond: Callable[[httpx.Request], httpx.Response]):
        recorder = RecordingTransport(respond)
        client = httpx.Client(transport=httpx.MockTransport(recorder), follow_redirects=True)
        return SyncBridge(client=client), recorder

    return _make


@pytest.fixture
def success_response():
    return lambda request: httpx.Response(200, json={"status": "success"})


@pytest.fixture
def network_error():
    def _raise(request):
        raise httpx.ConnectError("connection refused", request=request)

    return _raise


@pytest.fixture
def mock_openai_response():
    """Mock OpenAI API response structure."""
    class MockUsage:
        def __init__(self):
            self.prompt_tokens = 100
            self.completion_tokens = 50
            self.total_tokens = 150

    class MockMessage:
        def __init__(self, content):
            self.content = content

    class MockChoice:
        def __init__(self, content):
            self.message = MockMessage(content)

    class MockResponse:
        def __init__(self, content='{"patient_name": "Jane Doe"}'):
            self.choices = [MockChoice(content)]
            self.usage = MockUsage()

    return MockResponse
