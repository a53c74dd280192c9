"""
Request-scoped tracing for street geometry lookups.

A thread-local TraceContext collects, for one request:
  - every Overpass call (caller/strategy, latency, HTTP status, outcome)
  - every traced stage (street_geometry, nearby_streets), with the calls
    it made, how many failed, and what it settled on (e.g. the winning
    fallback strategy)

Usage:
    from bbp_trace import TraceContext, set_trace, clear_trace

    ctx = TraceContext(trace_id=request_id)
    set_trace(ctx)
    geometry = fetch_street_geometry("Via Torino")
    ctx.log_summary()
    clear_trace()

Library code never needs a trace to exist: traced_stage() is a no-op
and the Overpass layer skips recording when get_trace() returns None.
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)

# OverpassCall.outcome values other than "ok" count as failed calls.
CALL_OK = "ok"


@dataclass
class OverpassCall:
    """One HTTP request to the Overpass interpreter."""
    caller: str           # "street_geometry.exact", "nearby_streets", ...
    elapsed_ms: int
    http_status: int      # 0 when no response arrived
    outcome: str = CALL_OK  # or rate_limit, http_error, parse_error, body_error, timeout, exception
    stage: str = ""

    @property
    def strategy(self) -> str:
        """Fallback strategy key encoded in the caller, e.g. "exact"."""
        return self.caller.rsplit(".", 1)[-1]


@dataclass
class StageRecord:
    """One traced stage.  ``result`` is set by the code inside the stage."""
    stage_name: str
    elapsed_ms: int = 0
    calls: int = 0
    failed_calls: int = 0
    result: str = ""
    error_class: str = ""
    error_message: str = ""


@dataclass
class TraceContext:
    trace_id: str
    request_start: float = field(default_factory=time.time)
    stages: List[StageRecord] = field(default_factory=list)
    calls: List[OverpassCall] = field(default_factory=list)
    _current_stage: str = ""

    @contextmanager
    def stage(self, name: str) -> Iterator[StageRecord]:
        """Time the enclosed block as stage ``name``.

        Calls recorded inside the block are attributed to it.  An
        exception is stored on the record and re-raised.
        """
        outer = self._current_stage
        self._current_stage = name
        first_call = len(self.calls)
        record = StageRecord(stage_name=name)
        t0 = time.time()
        try:
            yield record
        except Exception as e:
            record.error_class = type(e).__name__
            record.error_message = str(e)[:200]
            raise
        finally:
            self._current_stage = outer
            own = self.calls[first_call:]
            record.elapsed_ms = int((time.time() - t0) * 1000)
            record.calls = len(own)
            record.failed_calls = sum(1 for c in own if c.outcome != CALL_OK)
            self.stages.append(record)
            logger.info(
                "  [stage] trace=%s %s %s %dms calls=%d failed=%d result=%s%s",
                self.trace_id,
                name,
                "ERR" if record.error_class else "OK",
                record.elapsed_ms,
                record.calls,
                record.failed_calls,
                record.result or "-",
                f" err={record.error_class}: {record.error_message}" if record.error_class else "",
            )

    def record_call(
        self,
        caller: str,
        elapsed_ms: int,
        http_status: int,
        outcome: str = CALL_OK,
    ):
        call = OverpassCall(
            caller=caller,
            elapsed_ms=elapsed_ms,
            http_status=http_status,
            outcome=outcome,
            stage=self._current_stage,
        )
        self.calls.append(call)
        logger.info(
            "  [overpass] trace=%s stage=%s caller=%s ms=%d http=%d outcome=%s",
            self.trace_id,
            self._current_stage or "-",
            caller,
            elapsed_ms,
            http_status,
            outcome,
        )

    def summary_dict(self) -> Dict[str, Any]:
        errored = sum(1 for s in self.stages if s.error_class)
        if not self.stages:
            outcome = "empty"
        elif errored == len(self.stages):
            outcome = "error"
        elif errored:
            outcome = "partial"
        else:
            outcome = "success"

        return {
            "trace_id": self.trace_id,
            "total_elapsed_ms": int((time.time() - self.request_start) * 1000),
            "overpass_calls": len(self.calls),
            "failed_calls": sum(1 for c in self.calls if c.outcome != CALL_OK),
            "stages": {s.stage_name: s.result for s in self.stages},
            "final_outcome": outcome,
        }

    def log_summary(self):
        s = self.summary_dict()
        logger.info(
            "[trace-summary] trace=%s total_ms=%d overpass_calls=%d failed=%d "
            "stages=%s outcome=%s",
            s["trace_id"],
            s["total_elapsed_ms"],
            s["overpass_calls"],
            s["failed_calls"],
            s["stages"],
            s["final_outcome"],
        )


# =============================================================================
# Thread-local storage
# =============================================================================

_trace_local = threading.local()


def get_trace() -> Optional[TraceContext]:
    """The current thread's trace, or None."""
    return getattr(_trace_local, "ctx", None)


def set_trace(ctx: Optional[TraceContext]):
    _trace_local.ctx = ctx


def clear_trace():
    _trace_local.ctx = None


@contextmanager
def traced_stage(name: str) -> Iterator[StageRecord]:
    """TraceContext.stage() on the current trace, or a detached record without one."""
    trace = get_trace()
    if trace is None:
        yield StageRecord(stage_name=name)
        return
    with trace.stage(name) as record:
        yield record
