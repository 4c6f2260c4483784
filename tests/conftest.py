"""
Shared fixtures for the markup explorer tests.
"""

import pytest

import markup_explorer
from markup_explorer import Interpreter, Page, SessionState

from tests.pages import SAMPLE_HTML, FakeFetcher


@pytest.fixture(autouse=True)
def plain_colors():
    """Keep ANSI codes out of captured output."""
    markup_explorer.apply_color_theme("default", enabled=False)


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher({
        "http://sample.test/": Page(200, "OK", SAMPLE_HTML),
        "http://lines.test/": Page(200, "OK", "one\ntwo"),
        "http://missing.test/": Page(404, "Not Found", "<p>gone</p>"),
        "http://broken.test/": Page(503, "Service Unavailable", "down"),
    })


@pytest.fixture
def state() -> SessionState:
    return SessionState()


@pytest.fixture
def explorer(state: SessionState, fetcher: FakeFetcher) -> Interpreter:
    return Interpreter(state, fetcher=fetcher)


@pytest.fixture
def loaded(explorer: Interpreter) -> Interpreter:
    """Interpreter with the sample page already fetched."""
    explorer.execute(["url", "http://sample.test/"])
    return explorer
