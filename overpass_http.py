"""
Coordinated Overpass API HTTP layer.

All Overpass HTTP requests MUST go through this module. It provides:
- Process-local rate limiting: minimum spacing between requests
- Thread-safe request execution (no shared requests.Session)
- Error classification (rate limit vs. query failure)
- bbp_trace integration for observability

There is no retry loop here. Callers that need a fallback
(street_geometry.fetch_street_geometry) walk an ordered list of query
strategies, one request each, and stop at the first usable result.

Rate limiting is per-process. When self-hosting Overpass, set
OVERPASS_BASE_URL and lower OVERPASS_MIN_SPACING.
"""

import logging
import os
import threading
import time
from typing import Any, Dict, Optional, Tuple

import requests

from bbp_trace import CALL_OK, get_trace

logger = logging.getLogger(__name__)


class OverpassRateLimitError(Exception):
    """Raised when Overpass returns 429 or rate-limit indicators."""

    pass


class OverpassQueryError(Exception):
    """Raised when Overpass returns an error, an unparseable body, or times out."""

    pass


# Substrings of osm3s.remark that mean the server gave up on the query.
_BODY_ERROR_INDICATORS = ("runtime error", "timed out", "out of memory")


def _classify_remark(data: Any) -> Tuple[str, str]:
    """(remark, outcome) for a 200 response.

    Overpass reports server-side failures with HTTP 200 and a remark in
    osm3s.remark or at the top level.  outcome is "rate_limit",
    "body_error" or CALL_OK.
    """
    if not isinstance(data, dict):
        return "", CALL_OK
    osm3s = data.get("osm3s") or {}
    remark = str(osm3s.get("remark") or data.get("remark") or "")
    lowered = remark.lower()
    if "too many requests" in lowered:
        return remark, "rate_limit"
    if any(ind in lowered for ind in _BODY_ERROR_INDICATORS):
        return remark, "body_error"
    return remark, CALL_OK


class OverpassHTTPClient:
    DEFAULT_TIMEOUT = int(os.environ.get("OVERPASS_TIMEOUT", "30"))  # seconds
    MIN_SPACING = float(os.environ.get("OVERPASS_MIN_SPACING", "1.0"))  # seconds

    def __init__(self, base_url: Optional[str] = None):
        self._lock = threading.Lock()
        self._last_request_time = 0.0
        self.base_url = base_url or os.environ.get(
            "OVERPASS_BASE_URL",
            "https://overpass-api.de/api/interpreter",
        )

    def query(
        self,
        overpass_ql: str,
        caller: str = "unknown",
        timeout: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Execute one Overpass QL query.

        Args:
            overpass_ql: The Overpass QL query string (must request [out:json]).
            caller: Identifier for trace attribution, e.g. the query strategy.
            timeout: HTTP timeout in seconds. Defaults to DEFAULT_TIMEOUT.

        Returns:
            Parsed JSON response dict from Overpass.

        Raises:
            OverpassRateLimitError: 429 or "too many requests" in the body.
            OverpassQueryError: any other HTTP error, non-JSON body, server
                error remark, timeout, or transport failure.
        """
        if timeout is None:
            timeout = self.DEFAULT_TIMEOUT

        self._wait_for_slot()

        start = time.monotonic()
        try:
            # Fresh session per request (thread-safe, no shared state)
            session = requests.Session()
            session.trust_env = False
            resp = session.post(
                self.base_url,
                data={"data": overpass_ql},
                timeout=timeout,
            )
        except requests.exceptions.Timeout:
            self._trace(caller, start, 0, "timeout")
            raise OverpassQueryError(
                f"Overpass request timeout after {timeout}s [caller={caller}]"
            )
        except requests.exceptions.RequestException as e:
            self._trace(caller, start, 0, "exception")
            raise OverpassQueryError(
                f"Overpass request failed: {e} [caller={caller}]"
            ) from e

        status_code = resp.status_code
        if status_code == 429:
            self._trace(caller, start, status_code, "rate_limit")
            logger.warning("Overpass rate limited [caller=%s]", caller)
            raise OverpassRateLimitError(
                f"Overpass 429 Too Many Requests [caller={caller}]"
            )
        if status_code >= 400:
            self._trace(caller, start, status_code, "http_error")
            raise OverpassQueryError(
                f"Overpass HTTP {status_code} [caller={caller}]"
            )

        try:
            data = resp.json()
        except ValueError:
            self._trace(caller, start, status_code, "parse_error")
            raise OverpassQueryError(
                f"Overpass returned non-JSON response (HTTP {status_code}) [caller={caller}]"
            )

        remark, outcome = _classify_remark(data)
        if outcome == "rate_limit":
            self._trace(caller, start, status_code, outcome)
            raise OverpassRateLimitError(
                f"Overpass rate limit in response body [caller={caller}]"
            )
        if outcome == "body_error":
            self._trace(caller, start, status_code, outcome)
            raise OverpassQueryError(
                f"Overpass server error in response body: {remark[:100]} [caller={caller}]"
            )

        self._trace(caller, start, status_code)
        return data

    def _wait_for_slot(self):
        """Enforce MIN_SPACING between consecutive requests in this process."""
        with self._lock:
            now = time.monotonic()
            elapsed_since_last = now - self._last_request_time
            if elapsed_since_last < self.MIN_SPACING:
                time.sleep(self.MIN_SPACING - elapsed_since_last)
            self._last_request_time = time.monotonic()

    @staticmethod
    def _trace(caller: str, start: float, status_code: int, outcome: str = CALL_OK):
        trace = get_trace()
        if trace:
            trace.record_call(
                caller=caller,
                elapsed_ms=int((time.monotonic() - start) * 1000),
                http_status=status_code,
                outcome=outcome,
            )


# Module-level singleton — all callers in this process share one instance
_client = OverpassHTTPClient()


def overpass_query(
    overpass_ql: str,
    caller: str = "unknown",
    timeout: Optional[int] = None,
) -> Dict[str, Any]:
    """Module-level convenience function. All Overpass calls should use this."""
    return _client.query(overpass_ql, caller=caller, timeout=timeout)
