"""HTTP client for the analysis backend: health, trace upload, analysis start."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import requests

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30
HEALTH_TIMEOUT_SECONDS = 1
UPLOAD_TIMEOUT_SECONDS = 60
MAX_RATE_LIMIT_RETRIES = 4


class BackendError(RuntimeError):
    """The backend answered with an error, or could not be reached."""

    def __init__(self, message: str, *, status: int | None = None, code: str | None = None):
        super().__init__(message)
        self.status = status
        self.code = code


class TraceNotUploadedError(BackendError):
    """The backend no longer knows the trace id it was given."""


@dataclass(frozen=True)
class UploadedTrace:
    trace_id: str
    port: int | None = None


@dataclass(frozen=True)
class AnalysisStart:
    session_id: str
    is_new_session: bool = False


def _retry_after(resp: requests.Response, attempt: int) -> float:
    retry_after = resp.headers.get("Retry-After")
    if retry_after:
        try:
            return float(retry_after)
        except ValueError:
            pass
    return 1.0 + (2 ** attempt)


class BackendClient:
    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        upload_timeout: float = UPLOAD_TIMEOUT_SECONDS,
        health_timeout: float = HEALTH_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.upload_timeout = upload_timeout
        self.health_timeout = health_timeout
        self.http = session or requests.Session()

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        """Send a request, waiting out 429 responses as ``Retry-After`` asks."""
        kwargs.setdefault("timeout", self.timeout)
        url = self._url(path)
        resp = None
        for attempt in range(MAX_RATE_LIMIT_RETRIES):
            try:
                resp = self.http.request(method, url, **kwargs)
            except requests.RequestException as exc:
                raise BackendError(f"{method} {path} failed: {exc}") from exc
            if resp.status_code != 429:
                return resp
            sleep_seconds = _retry_after(resp, attempt)
            logger.info("Rate limited on %s; retrying in %.1fs", path, sleep_seconds)
            time.sleep(sleep_seconds)
        raise BackendError(f"{method} {path} still rate limited", status=429)

    def _json(self, resp: requests.Response) -> dict:
        try:
            data = resp.json()
        except ValueError as exc:
            raise BackendError(
                f"Backend returned non-JSON body: {resp.text[:200]}", status=resp.status_code
            ) from exc
        if not isinstance(data, dict):
            raise BackendError("Backend returned an unexpected JSON document", status=resp.status_code)
        return data

    def _raise_for_error(self, resp: requests.Response, what: str) -> None:
        if resp.ok:
            return
        try:
            data = resp.json()
        except ValueError:
            data = {}
        code = data.get("code") if isinstance(data, dict) else None
        detail = data.get("error") if isinstance(data, dict) else None
        message = f"{what} failed: {resp.status_code} {detail or resp.reason}"
        if code == "TRACE_NOT_UPLOADED":
            raise TraceNotUploadedError(message, status=resp.status_code, code=code)
        raise BackendError(message, status=resp.status_code, code=code)

    def check_available(self) -> bool:
        """True when the backend answers its health check in time."""
        try:
            resp = self.http.get(self._url("/api/traces/health"), timeout=self.health_timeout)
        except requests.RequestException as exc:
            logger.debug("Backend health check failed: %s", exc)
            return False
        if not resp.ok:
            return False
        try:
            data = resp.json()
        except ValueError:
            return False
        return isinstance(data, dict) and data.get("available") is True

    def upload_trace(self, trace_path: str | Path) -> UploadedTrace:
        path = Path(trace_path)
        with path.open("rb") as f:
            resp = self._request(
                "POST",
                "/api/traces/upload",
                files={"file": (path.name, f, "application/octet-stream")},
                timeout=self.upload_timeout,
            )
        self._raise_for_error(resp, "Upload")
        data = self._json(resp)
        trace = data.get("trace") if isinstance(data.get("trace"), dict) else {}
        if not data.get("success") or not trace.get("id"):
            raise BackendError(f"Upload failed: {data.get('error') or 'unknown upload error'}")
        port = trace.get("port")
        logger.info("Uploaded %s as trace %s", path.name, trace["id"])
        return UploadedTrace(trace_id=str(trace["id"]), port=int(port) if port else None)

    def verify_trace(self, trace_id: str) -> bool:
        """False when the backend answers that ``trace_id`` is unknown."""
        resp = self._request("GET", f"/api/traces/{trace_id}")
        if resp.status_code == 404:
            return False
        self._raise_for_error(resp, "Trace lookup")
        return True

    def start_analysis(
        self,
        query: str,
        trace_id: str,
        *,
        session_id: str | None = None,
        options: dict | None = None,
    ) -> AnalysisStart:
        payload: dict[str, Any] = {"query": query, "traceId": trace_id, "options": options or {}}
        if session_id:
            payload["sessionId"] = session_id
        resp = self._request("POST", "/api/agent/analyze", json=payload)
        self._raise_for_error(resp, "Analysis request")
        data = self._json(resp)
        if not data.get("success") or not data.get("sessionId"):
            raise BackendError(data.get("error") or "Analysis failed to start")
        return AnalysisStart(
            session_id=str(data["sessionId"]),
            is_new_session=bool(data.get("isNewSession")),
        )
