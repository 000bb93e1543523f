# tests/conftest.py
"""
Shared fakes for the test suite.

Everything here runs offline: content fetches go through FakeFetcher, the
document store is the in-process MemoryStore, and PocketBase/HTTP clients are
driven with httpx.MockTransport inside the individual test modules.
"""

import pytest

from core.config import ConfigManager
from core.errors import FetchError
from core.extraction import ExtractionPipeline, FetchedResource
from core.store import MemoryStore


class FakeFetcher:
    """Serves canned bodies by URL and records every fetch."""

    def __init__(self, pages=None):
        self.pages = dict(pages or {})
        self.calls = []

    async def fetch(self, url, headers=None, timeout=None):
        self.calls.append(url)
        body = self.pages.get(url)
        if body is None:
            raise FetchError(f"Not Found fetching {url}", status_code=404)
        return FetchedResource(url=url, status_code=200, text=body)


class FixedStoreFactory:
    """Always hands out the same store, whatever the Configuration."""

    def __init__(self, store):
        self.store = store
        self.built = 0

    def __call__(self, config):
        self.built += 1
        return self.store


LEARN_URL = "https://learn.microsoft.com/en-us/azure/overview"
LEARN_HTML = """
<html>
  <head>
    <title>Azure overview</title>
    <meta name="description" content="What Azure is">
  </head>
  <body>
    <h1>Azure   overview</h1>
    <div data-bi-name="content">
      <h2>Getting started</h2>
      <p>Azure is a cloud platform with more than two hundred products and cloud services
         designed to help you bring new solutions to life.</p>
      <script>track()</script>
    </div>
  </body>
</html>
"""


def memory_config(**extra) -> ConfigManager:
    environ = {"STORE_BACKEND": "memory", "DOCUMENTS_COLLECTION": "documents"}
    environ.update(extra)
    return ConfigManager(environ=environ)


@pytest.fixture
def fetcher():
    return FakeFetcher({LEARN_URL: LEARN_HTML})


@pytest.fixture
def pipeline(fetcher):
    return ExtractionPipeline(fetcher=fetcher)


@pytest.fixture
def memory_store():
    return MemoryStore()
