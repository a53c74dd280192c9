"""Shared fixtures for the path engine test suite.

No test touches the network: Overpass calls go through a fake fetcher
or a patched requests.Session.
"""

import os
from datetime import datetime, timezone

import pytest

# Rate limiter reads this at import time; keep tests from sleeping.
os.environ.setdefault("OVERPASS_MIN_SPACING", "0")

from bbp_trace import clear_trace  # noqa: E402


NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _no_trace():
    """Every test starts and ends without a thread-local trace."""
    clear_trace()
    yield
    clear_trace()


@pytest.fixture
def now():
    return NOW


class FakeFetcher:
    """Stands in for overpass_query.

    ``responses`` is consumed in order, one per call.  An Exception
    instance is raised instead of returned.
    """

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def __call__(self, query, caller="unknown", timeout=None):
        self.calls.append({"query": query, "caller": caller, "timeout": timeout})
        if not self.responses:
            return {"elements": []}
        result = self.responses.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def fake_fetcher():
    return FakeFetcher

