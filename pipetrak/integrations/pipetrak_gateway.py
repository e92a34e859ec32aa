"""
PipeTrak Milestone API Gateway.

All outbound HTTP calls from the client-side engine (update coordinator,
bulk orchestrator, failure retry) to the milestone persistence API go
through this class. Direct `requests` calls elsewhere are FORBIDDEN.

  - Retry: up to PIPETRAK_API_MAX_RETRIES extra attempts on network errors
    and 5xx, backoff 1 s → 3 s. 4xx is an answer, never retried.
  - Timeout: PIPETRAK_API_TIMEOUT seconds per attempt (default 30).
  - `request()` always returns a GatewayResult; the typed operations turn a
    failed result into TransportError (no answer) or UpdateRejectedError
    (the server refused).

Testability: pass a mock `session` to PipeTrakGateway() in tests instead of
letting it create a real requests.Session internally.
"""

from __future__ import annotations

import abc
import logging
import time
from typing import Any

import requests

from pipetrak.core.exceptions import TransportError, UpdateRejectedError

logger = logging.getLogger(__name__)

# ── Retry constants ────────────────────────────────────────────────────────
_RETRY_MAX = 2
_RETRY_BACKOFF_SECONDS = [1, 3]    # sleep[0] after 1st fail, sleep[1] after 2nd

# ── Default request timeout ────────────────────────────────────────────────
_DEFAULT_TIMEOUT = 30

API_PREFIX = "/api/v1/pipetrak"


class MilestoneGateway(abc.ABC):
    """Persistence collaborator used by the coordinator and the bulk orchestrator."""

    @abc.abstractmethod
    def update_milestone(self, project_id, component_id, milestone_id, value) -> dict:
        """Apply one milestone value.

        Returns:
            {"milestone": {...}, "component": {...}} with the authoritative fields.

        Raises:
            UpdateRejectedError: the persistence layer refused the update.
            TransportError: no answer was obtained.
        """

    @abc.abstractmethod
    def bulk_update(
        self,
        project_id,
        component_ids: list,
        updates: list[dict],
        *,
        atomic: bool = False,
        validate_only: bool = False,
    ) -> dict:
        """Apply updates to many components.

        Returns:
            {"successful": [...], "failed": [...], "total": n, "components": [...]}

        Raises:
            UpdateRejectedError: the whole request was refused.
            TransportError: no result object was obtained.
        """

    @abc.abstractmethod
    def list_components(self, project_id, *, drawing_id=None, template_id=None) -> list[dict]:
        """Return ComponentWithMilestones payloads for a project."""


class GatewayResult:
    """Structured return value from PipeTrakGateway.request().

    Attributes:
        ok:             True if the call succeeded (HTTP 2xx + no exception).
        status_code:    HTTP status code (None if network-level failure).
        data:           Parsed JSON response body (dict or list), else None.
        error:          Server error text or network error message, else None.
        duration_ms:    Round-trip latency in milliseconds.
        attempts:       Number of HTTP attempts made.
    """

    def __init__(
        self,
        ok: bool,
        status_code: int | None,
        data: dict | list | None,
        error: str | None,
        duration_ms: int,
        attempts: int = 1,
    ) -> None:
        self.ok = ok
        self.status_code = status_code
        self.data = data
        self.error = error
        self.duration_ms = duration_ms
        self.attempts = attempts

    @property
    def rejected(self) -> bool:
        """True when the server answered with a 4xx."""
        return self.status_code is not None and 400 <= self.status_code < 500

    def raise_for_failure(self) -> None:
        if self.ok:
            return
        if self.rejected:
            raise UpdateRejectedError(self.error or "Update rejected", status_code=self.status_code)
        raise TransportError(self.error or "Request failed", status_code=self.status_code)

    def __repr__(self):
        return f"<GatewayResult ok={self.ok} status={self.status_code} attempts={self.attempts}>"


def _error_text(resp: requests.Response) -> str:
    """Server error message verbatim when the body carries one."""
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    text = (resp.text or "").strip()
    return f"HTTP {resp.status_code}: {text[:500]}" if text else f"HTTP {resp.status_code}"


class PipeTrakGateway(MilestoneGateway):
    """HTTP client for the milestone persistence API.

    Usage:
        gateway = PipeTrakGateway.from_config(app.config)
        payload = gateway.update_milestone(project_id=1, component_id=7, milestone_id=31, value=True)
    """

    def __init__(
        self,
        base_url: str,
        session: requests.Session | None = None,
        *,
        timeout: int = _DEFAULT_TIMEOUT,
        max_retries: int = _RETRY_MAX,
        headers: dict | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max(0, max_retries)
        self.headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            **(headers or {}),
        }
        # Inject custom session for testing; create real one lazily otherwise.
        self._session: requests.Session | None = session

    @classmethod
    def from_config(cls, config: Any, session: requests.Session | None = None) -> PipeTrakGateway:
        """Build from a Flask config mapping (PIPETRAK_API_* keys)."""
        return cls(
            config.get("PIPETRAK_API_URL", "http://localhost:5000"),
            session=session,
            timeout=int(config.get("PIPETRAK_API_TIMEOUT", _DEFAULT_TIMEOUT)),
            max_retries=int(config.get("PIPETRAK_API_MAX_RETRIES", _RETRY_MAX)),
        )

    # ── HTTP session ─────────────────────────────────────────────────────────

    @property
    def session(self) -> requests.Session:
        """Return (or lazily create) the requests.Session."""
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def _url(self, path: str) -> str:
        return f"{self.base_url}{API_PREFIX}{path}"

    # ── Core request dispatcher ───────────────────────────────────────────────

    def request(
        self,
        method: str,
        path: str,
        *,
        json_body: dict | list | None = None,
        params: dict | None = None,
    ) -> GatewayResult:
        """Execute a request with retries.

        Returns:
            GatewayResult - always returns (never raises). Callers check .ok.
        """
        url = self._url(path)
        last_error = "Unknown error"
        last_status: int | None = None
        t_start = time.perf_counter()
        attempts = 0

        for attempt in range(self.max_retries + 1):
            attempts = attempt + 1
            kwargs: dict[str, Any] = {"headers": self.headers, "timeout": self.timeout}
            if json_body is not None:
                kwargs["json"] = json_body
            if params:
                kwargs["params"] = params

            try:
                resp = self.session.request(method, url, **kwargs)
                last_status = resp.status_code

                if resp.ok:
                    try:
                        data = resp.json() if resp.content else {}
                    except ValueError:
                        data = {}
                    return GatewayResult(
                        ok=True,
                        status_code=resp.status_code,
                        data=data,
                        error=None,
                        duration_ms=int((time.perf_counter() - t_start) * 1000),
                        attempts=attempts,
                    )

                last_error = _error_text(resp)
                if resp.status_code < 500:
                    logger.info(
                        "PipeTrak request rejected status=%d %s %s: %s",
                        resp.status_code, method, url, last_error,
                    )
                    break
                logger.warning(
                    "PipeTrak request failed attempt=%d/%d status=%d %s %s",
                    attempts, self.max_retries + 1, resp.status_code, method, url,
                )

            except requests.Timeout:
                last_status = None
                last_error = f"Request timed out after {self.timeout}s"
                logger.warning(
                    "PipeTrak request timed out attempt=%d/%d %s %s",
                    attempts, self.max_retries + 1, method, url,
                )

            except requests.RequestException as exc:
                last_status = None
                last_error = str(exc)[:500] or exc.__class__.__name__
                logger.warning(
                    "PipeTrak network error attempt=%d/%d %s %s error=%s",
                    attempts, self.max_retries + 1, method, url, last_error,
                )

            if attempt < self.max_retries:
                sleep_s = _RETRY_BACKOFF_SECONDS[min(attempt, len(_RETRY_BACKOFF_SECONDS) - 1)]
                logger.info("Retrying PipeTrak request in %ss (attempt %d)", sleep_s, attempt + 2)
                time.sleep(sleep_s)

        return GatewayResult(
            ok=False,
            status_code=last_status,
            data=None,
            error=last_error,
            duration_ms=int((time.perf_counter() - t_start) * 1000),
            attempts=attempts,
        )

    # ── Milestone operations ──────────────────────────────────────────────────

    def update_milestone(self, project_id, component_id, milestone_id, value) -> dict:
        result = self.request(
            "PATCH",
            f"/projects/{project_id}/components/{component_id}/milestones/{milestone_id}",
            json_body={"value": value},
        )
        result.raise_for_failure()
        return result.data or {}

    def bulk_update(
        self,
        project_id,
        component_ids: list,
        updates: list[dict],
        *,
        atomic: bool = False,
        validate_only: bool = False,
    ) -> dict:
        result = self.request(
            "POST",
            f"/projects/{project_id}/milestones/bulk-update",
            json_body={
                "component_ids": list(component_ids),
                "updates": list(updates),
                "options": {"atomic": atomic, "validate_only": validate_only},
            },
        )
        result.raise_for_failure()
        if not isinstance(result.data, dict):
            raise TransportError("Bulk update returned no result object", status_code=result.status_code)
        return result.data

    def list_components(self, project_id, *, drawing_id=None, template_id=None) -> list[dict]:
        params = {}
        if drawing_id is not None:
            params["drawing_id"] = drawing_id
        if template_id is not None:
            params["template_id"] = template_id
        result = self.request("GET", f"/projects/{project_id}/components", params=params)
        result.raise_for_failure()
        return (result.data or {}).get("items", [])
