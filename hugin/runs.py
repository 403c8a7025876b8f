"""Run creation and per-call reconciliation against the task API.

``RunSubmitter`` creates a run exactly once and maps upstream failures to
coded errors. ``PollCoordinator`` holds no state between calls: every poll
recomputes the run's status from upstream (result fetch first, then a
status probe) and never reports a transient failure as terminal.
"""

import logging
import math
import re
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

from .config import DEFAULT_STUCK_ESTIMATES
from .errors import (
    MissingRunId,
    NotConfigured,
    ResearchError,
    UpstreamForbidden,
    UpstreamInvalidRequest,
    UpstreamRateLimited,
    UpstreamUnauthorized,
    UpstreamUnavailable,
)
from .normalize import normalize_result
from .parallel import UpstreamReply
from .schemas import PROCESSOR_TIERS, CreateRunRequest, Diagnostics, PollOutcome, Run

logger = logging.getLogger("uvicorn.error")

RUN_KIND = "company-deep-research"
# Checked in order; the first positive number wins.
ESTIMATE_FIELDS = (
    "estimated_seconds",
    "eta_seconds",
    "estimate_seconds",
    "expected_duration_seconds",
)
TIMESTAMP_FIELDS = ("created_at", "queued_at", "createdAt")
RUNNING_STATUSES = {"running", "action_required", "cancelling"}
FAILED_STATUSES = {"failed", "cancelled", "canceled"}
# Older fromisoformat only accepts 3 or 6 fractional digits.
FRACTION_RE = re.compile(r"\.(\d+)")
RETRY_AFTER_MIN_S = 5
RETRY_AFTER_MAX_S = 30
FALLBACK_ESTIMATE_S = 120


class TaskClient(Protocol):
    @property
    def enabled(self) -> bool: ...

    async def create_run(self, payload: Dict[str, Any], deadline_s: Optional[float] = None) -> UpstreamReply: ...

    async def fetch_result(self, run_id: str, wait_s: int, deadline_s: float) -> UpstreamReply: ...

    async def get_run(self, run_id: str, deadline_s: float) -> UpstreamReply: ...


def _clean(value: Optional[str]) -> str:
    return (value or "").strip()


def clamp_wait(value: Any, default: int = 25, maximum: int = 55) -> int:
    if value is None or value == "":
        wait = default
    else:
        try:
            wait = int(float(value))
        except (TypeError, ValueError, OverflowError):
            wait = default
    return max(0, min(maximum, wait))


def retry_after_for(wait_s: int) -> int:
    return max(RETRY_AFTER_MIN_S, min(RETRY_AFTER_MAX_S, wait_s // 2))


def parse_timestamp(value: Any) -> Optional[float]:
    """Epoch seconds from an ISO-8601 string or a numeric epoch (seconds or millis)."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if value <= 0 or not math.isfinite(value):
            return None
        return float(value) / 1000.0 if value > 1e12 else float(value)
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    text = FRACTION_RE.sub(lambda m: "." + (m.group(1) + "000000")[:6], text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def elapsed_seconds(run_data: Mapping[str, Any], now: float) -> Optional[int]:
    for key in TIMESTAMP_FIELDS:
        started = parse_timestamp(run_data.get(key))
        if started is not None:
            return max(0, int(now - started))
    return None


def long_end_estimate(run_data: Mapping[str, Any], processor: Optional[str], estimates: Mapping[str, int]) -> int:
    for key in ESTIMATE_FIELDS:
        value = run_data.get(key)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            continue
        if value > 0 and math.isfinite(value):
            return int(math.ceil(value))
    if processor and processor in estimates:
        return int(estimates[processor])
    return int(estimates.get("base", FALLBACK_ESTIMATE_S))


def build_task_input(request: CreateRunRequest) -> str:
    direct = _clean(request.input)
    if direct:
        return direct
    parts = []
    prompt = _clean(request.prompt)
    custom = _clean(request.custom_input)
    company_input = _clean(request.company_input)
    if prompt:
        parts.append(prompt)
    if custom:
        parts.append(custom)
    if company_input:
        parts.append(company_input)
    else:
        lines = [f"Company: {_clean(request.company_name)}"]
        if _clean(request.org_number):
            lines.append(f"Org number: {_clean(request.org_number)}")
        if _clean(request.website):
            lines.append(f"Website: {_clean(request.website)}")
        parts.append("\n".join(lines))
    return "\n".join(parts)


def _retry_after_header(reply: UpstreamReply) -> Optional[int]:
    raw = reply.header("retry-after")
    if not raw:
        return None
    try:
        return max(0, int(float(raw)))
    except (ValueError, OverflowError):
        return None


def error_for_reply(reply: UpstreamReply) -> ResearchError:
    details = reply.text or reply.error
    if reply.status_code == 429:
        return UpstreamRateLimited(details=details, retry_after=_retry_after_header(reply))
    if reply.status_code == 401:
        return UpstreamUnauthorized(details=details)
    if reply.status_code == 403:
        return UpstreamForbidden(details=details)
    if reply.status_code == 422:
        return UpstreamInvalidRequest(details=details)
    return UpstreamUnavailable(details=details)


class RunSubmitter:
    def __init__(self, client: TaskClient, default_processor: str = "pro", deadline_s: Optional[float] = None):
        self.client = client
        self.default_processor = default_processor
        self.deadline_s = deadline_s

    def build_payload(self, request: CreateRunRequest) -> Dict[str, Any]:
        metadata: Dict[str, Any] = dict(request.metadata or {})
        metadata.update({"kind": RUN_KIND, "org_number": _clean(request.org_number)})
        payload: Dict[str, Any] = {
            "input": build_task_input(request),
            "processor": request.processor or self.default_processor,
            "metadata": metadata,
        }
        output_schema = _clean(request.output_schema)
        if output_schema:
            payload["task_spec"] = {"output_schema": output_schema}
        return payload

    async def submit(self, request: CreateRunRequest) -> Run:
        """Submit once; retrying is left to the caller."""
        if not _clean(request.company_name):
            raise ValueError("companyName is required")
        if not self.client.enabled:
            raise NotConfigured("Parallel API key not configured")
        payload = self.build_payload(request)
        reply = await self.client.create_run(payload, deadline_s=self.deadline_s)
        if not reply.ok:
            error = error_for_reply(reply)
            logger.warning("Run creation failed (%s): %s", reply.status_code or reply.error, error.error_code)
            raise error
        data = reply.data if isinstance(reply.data, dict) else {}
        run_id = data.get("run_id")
        if not isinstance(run_id, str) or not run_id.strip():
            raise MissingRunId(details=reply.text)
        created = parse_timestamp(data.get("created_at"))
        try:
            created_at = datetime.fromtimestamp(created, timezone.utc) if created else datetime.now(timezone.utc)
        except (OverflowError, OSError, ValueError):
            created_at = datetime.now(timezone.utc)
        logger.info("Run %s created (processor=%s)", run_id, payload["processor"])
        return Run(id=run_id, processor=payload["processor"], created_at=created_at)


class PollCoordinator:
    def __init__(
        self,
        client: TaskClient,
        *,
        default_wait_s: int = 25,
        max_wait_s: int = 55,
        status_probe_timeout_s: float = 8.0,
        result_fetch_floor_s: float = 2.0,
        result_fetch_margin_s: float = 2.0,
        stuck_grace_s: int = 10,
        stuck_estimates: Optional[Mapping[str, int]] = None,
        default_processor: str = "pro",
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.default_wait_s = default_wait_s
        self.max_wait_s = max_wait_s
        self.status_probe_timeout_s = status_probe_timeout_s
        self.result_fetch_floor_s = result_fetch_floor_s
        self.result_fetch_margin_s = result_fetch_margin_s
        self.stuck_grace_s = stuck_grace_s
        self.stuck_estimates = dict(stuck_estimates or DEFAULT_STUCK_ESTIMATES)
        self.default_processor = default_processor
        self.clock = clock

    def _pending(self, run_id: str, status: str, wait_s: int, generation: Optional[int], **extra: Any) -> PollOutcome:
        return PollOutcome(
            run_id=run_id,
            status=status,
            retry_after_seconds=retry_after_for(wait_s),
            generation=generation,
            **extra,
        )

    async def poll(
        self,
        run_id: str,
        wait_s: Any = None,
        processor: Optional[str] = None,
        generation: Optional[int] = None,
    ) -> PollOutcome:
        if not self.client.enabled:
            raise NotConfigured("Parallel API key not configured")
        wait = clamp_wait(wait_s, self.default_wait_s, self.max_wait_s)
        deadline = max(self.result_fetch_floor_s, wait + self.result_fetch_margin_s)
        result = await self.client.fetch_result(run_id, wait, deadline)
        if result.ok and isinstance(result.data, dict) and result.data.get("output") is not None:
            logger.info("Run %s completed", run_id)
            return PollOutcome(
                run_id=run_id,
                status="completed",
                result=normalize_result(result.data),
                raw_output=result.data.get("output"),
                generation=generation,
            )
        if result.transient:
            logger.info("Run %s result not ready within %ss: %s", run_id, wait, result.error)

        probe = await self.client.get_run(run_id, self.status_probe_timeout_s)
        if not probe.ok or not isinstance(probe.data, dict):
            # A blip while the job may still be running is never terminal.
            logger.warning(
                "Run %s status probe failed (%s); reporting queued",
                run_id,
                probe.status_code or probe.error,
            )
            return self._pending(run_id, "queued", wait, generation)
        return self._reconcile(run_id, probe.data, wait, processor, generation)

    def _reconcile(
        self,
        run_id: str,
        run_data: Dict[str, Any],
        wait: int,
        processor: Optional[str],
        generation: Optional[int],
    ) -> PollOutcome:
        upstream = str(run_data.get("status") or "queued").strip().lower()
        if upstream in FAILED_STATUSES:
            message = _upstream_error_message(run_data) or f"Run {upstream}"
            logger.warning("Run %s ended upstream as %s: %s", run_id, upstream, message)
            return PollOutcome(run_id=run_id, status="error", error=message, generation=generation)
        if upstream in RUNNING_STATUSES or upstream == "completed":
            # A completed run whose result could not be fetched this pass is still settling.
            return self._pending(run_id, "running", wait, generation)
        if upstream != "queued":
            return self._pending(run_id, "queued", wait, generation)

        elapsed = elapsed_seconds(run_data, self.clock())
        if elapsed is None:
            return self._pending(run_id, "queued", wait, generation)
        tier = _tier(run_data.get("processor")) or _tier(processor) or self.default_processor
        estimate = long_end_estimate(run_data, tier, self.stuck_estimates)
        diagnostics = Diagnostics(elapsed_seconds=elapsed, estimate_seconds=estimate)
        if elapsed > estimate + self.stuck_grace_s:
            logger.warning("Run %s looks stuck: queued %ss (estimate %ss)", run_id, elapsed, estimate)
            return self._pending(run_id, "stuck", wait, generation, diagnostics=diagnostics)
        return self._pending(run_id, "queued", wait, generation)


def _tier(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip().lower() in PROCESSOR_TIERS:
        return value.strip().lower()
    return None


def _upstream_error_message(run_data: Mapping[str, Any]) -> Optional[str]:
    error = run_data.get("error")
    if isinstance(error, str) and error.strip():
        return error.strip()
    if isinstance(error, dict):
        message = error.get("message") or error.get("detail")
        if isinstance(message, str) and message.strip():
            return message.strip()
    return None
