"""In-memory metrics for active orchestrator runs.

Usage:
    >>> collector = MetricsCollector()
    >>> collector.start("run_abc123")
    >>> collector.record_llm_call("run_abc123", prompt_tokens=100, completion_tokens=50)
    >>> collector.record_tool_call("run_abc123")
    >>> final = collector.finish("run_abc123")
"""

import threading
import time
from dataclasses import asdict, dataclass, field

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class RunMetricsData:
    """Accumulated metrics for a single run.

    Attributes:
        total_tokens: Sum of prompt and completion tokens.
        prompt_tokens: Input tokens across all LLM calls.
        completion_tokens: Output tokens across all LLM calls.
        llm_calls: Number of LLM invocations.
        tool_calls: Number of tool executions.
        rate_limit_retries: Number of rate-limited attempts that were retried.
        duration_ms: Wall-clock duration, set by ``finish()``.
        started_at: Unix timestamp when tracking began.
    """

    total_tokens: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    llm_calls: int = 0
    tool_calls: int = 0
    rate_limit_retries: int = 0
    duration_ms: int = 0
    started_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, int]:
        data = asdict(self)
        data.pop("started_at")
        return data


class MetricsCollector:
    """Tracks per-run metrics; sub-agents record into their own run ids."""

    def __init__(self) -> None:
        self._runs: dict[str, RunMetricsData] = {}
        self._lock = threading.Lock()

    def start(self, run_id: str) -> None:
        """Begin tracking a run. Already-tracked runs are left untouched."""
        with self._lock:
            if run_id in self._runs:
                return
            self._runs[run_id] = RunMetricsData()
        logger.debug("metrics_tracking_started", run_id=run_id)

    def record_llm_call(self, run_id: str, prompt_tokens: int, completion_tokens: int) -> None:
        with self._lock:
            data = self._runs.get(run_id)
            if data is None:
                logger.warning("metrics_record_no_run", run_id=run_id)
                return
            data.prompt_tokens += prompt_tokens
            data.completion_tokens += completion_tokens
            data.total_tokens += prompt_tokens + completion_tokens
            data.llm_calls += 1

    def record_tool_call(self, run_id: str) -> None:
        with self._lock:
            data = self._runs.get(run_id)
            if data is None:
                logger.warning("metrics_tool_no_run", run_id=run_id)
                return
            data.tool_calls += 1

    def record_rate_limit_retry(self, run_id: str) -> None:
        with self._lock:
            data = self._runs.get(run_id)
            if data is not None:
                data.rate_limit_retries += 1

    def finish(self, run_id: str) -> RunMetricsData | None:
        """Stop tracking a run and return its totals with ``duration_ms`` set.

        Returns None when the run was never started.
        """
        with self._lock:
            data = self._runs.pop(run_id, None)
        if data is None:
            logger.warning("metrics_finish_no_run", run_id=run_id)
            return None

        data.duration_ms = int((time.time() - data.started_at) * 1000)
        logger.info(
            "metrics_run_finished",
            run_id=run_id,
            total_tokens=data.total_tokens,
            llm_calls=data.llm_calls,
            tool_calls=data.tool_calls,
            duration_ms=data.duration_ms,
        )
        return data

    def get(self, run_id: str) -> RunMetricsData | None:
        """Current metrics of an in-progress run."""
        with self._lock:
            return self._runs.get(run_id)
