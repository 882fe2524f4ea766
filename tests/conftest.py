"""Shared test fixtures for replayengine."""
import json
from pathlib import Path

import pytest
import structlog

from replayengine.models import Flow

# Path to test fixtures
FIXTURES_DIR = Path(__file__).parent / "fixtures"
MOCK_PAGES_DIR = FIXTURES_DIR / "mock_pages"


@pytest.fixture(autouse=True)
def reset_logging():
    """Drop logging configuration bound to a test's captured streams."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def fixtures_dir() -> Path:
    """Path to test fixtures directory."""
    return FIXTURES_DIR


@pytest.fixture
def simple_form_path() -> Path:
    """Path to the simple form test page."""
    return MOCK_PAGES_DIR / "simple_form.html"


@pytest.fixture
def sample_flow_data() -> dict:
    """Load the sample flow as a dict."""
    with open(FIXTURES_DIR / "sample_flow.json") as f:
        return json.load(f)


@pytest.fixture
def sample_flow(sample_flow_data) -> Flow:
    return Flow.model_validate(sample_flow_data)


@pytest.fixture
def flows_dir(tmp_path, sample_flow_data) -> Path:
    """Flows directory holding the sample flow as <name>/flow.json."""
    root = tmp_path / "flows"
    flow_dir = root / sample_flow_data["metadata"]["name"]
    flow_dir.mkdir(parents=True)
    with open(flow_dir / "flow.json", "w") as f:
        json.dump(sample_flow_data, f)
    return root
