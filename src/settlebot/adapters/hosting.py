from __future__ import annotations

import asyncio
import logging
import ssl
from abc import ABC, abstractmethod
from collections.abc import Callable
from time import sleep
from typing import Any

import httpx

from settlebot.domain.events import HostingMatchState, HostingMatchStatus
from settlebot.domain.models import HostingProviderError
from settlebot.observability import get_instrumentation
from settlebot.security.redaction import sanitize_text
from settlebot.services.retry import retry_with_backoff

logger = logging.getLogger(__name__)

_ERROR_SNIPPET_LIMIT = 240
_RETRY_ATTEMPTS = 4
_RETRY_BASE_DELAY_SECONDS = 0.4
_RETRY_MAX_DELAY_SECONDS = 4.0
_RETRY_TOTAL_WAIT_CAP_SECONDS = 8.0


class HostingProvider(ABC):
    @abstractmethod
    def get_match_status(self, external_id: str) -> HostingMatchStatus:
        raise NotImplementedError

    @abstractmethod
    def send_server_command(self, server_id: str, command: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def release_server(self, server_id: str) -> None:
        raise NotImplementedError

    def close(self) -> None:
        return None


def _is_permanent_transport_error(exc: httpx.TransportError) -> bool:
    if isinstance(exc, (httpx.UnsupportedProtocol, httpx.ProtocolError, httpx.LocalProtocolError)):
        return True
    cause = getattr(exc, "__cause__", None)
    return isinstance(cause, ssl.SSLCertVerificationError)


def _should_retry(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TimeoutException):
        return True
    if isinstance(exc, httpx.HTTPStatusError) and exc.response is not None:
        return exc.response.status_code == 429 or exc.response.status_code >= 500
    if isinstance(exc, httpx.TransportError):
        return not _is_permanent_transport_error(exc)
    return False


class _RetryableHostingError(Exception):
    def __init__(self, cause: Exception) -> None:
        super().__init__(str(cause))
        self.cause = cause


def _response_snippet(response: httpx.Response) -> str:
    text = response.text.strip().replace("\n", " ")
    return sanitize_text(text[:_ERROR_SNIPPET_LIMIT])


def match_status_from_payload(payload: dict[str, Any]) -> HostingMatchStatus:
    status = str(payload.get("status") or "").strip().lower()
    winner = payload.get("winner")
    winner_team = str(winner).strip() if winner else None
    if status in {"cancelled", "canceled"} or payload.get("cancel_reason"):
        return HostingMatchStatus(state=HostingMatchState.CANCELLED, raw=payload)
    if status == "ended" or payload.get("finished") is True:
        return HostingMatchStatus(
            state=HostingMatchState.ENDED, winner_team=winner_team, raw=payload
        )
    return HostingMatchStatus(state=HostingMatchState.IN_PROGRESS, raw=payload)


class DatHostHttpClient(HostingProvider):
    BASE_URL = "https://dathost.net/api/0.1"

    def __init__(
        self,
        *,
        username: str | None = None,
        password: str | None = None,
        base_url: str | None = None,
        timeout: float | httpx.Timeout = 10.0,
        transport: httpx.BaseTransport | None = None,
        sleep_fn: Callable[[float], None] | None = None,
    ) -> None:
        self._sleep = sleep_fn or self._safe_sleep
        resolved_timeout = (
            timeout
            if isinstance(timeout, httpx.Timeout)
            else httpx.Timeout(timeout=timeout, connect=5.0)
        )
        auth = (username, password) if username and password else None
        self.client = httpx.Client(
            base_url=base_url or self.BASE_URL,
            timeout=resolved_timeout,
            transport=transport,
            auth=auth,
        )

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> DatHostHttpClient:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        del exc_type, exc, tb
        self.close()

    def get_match_status(self, external_id: str) -> HostingMatchStatus:
        response = self._request("GET", f"/cs2-matches/{external_id}", allow_not_found=True)
        if response.status_code == 404:
            return HostingMatchStatus(state=HostingMatchState.NOT_FOUND)
        try:
            payload = response.json()
        except ValueError as exc:
            raise HostingProviderError(
                "hosting provider returned invalid JSON", status_code=response.status_code
            ) from exc
        if not isinstance(payload, dict):
            raise HostingProviderError(
                "hosting provider match payload must be a JSON object",
                status_code=response.status_code,
            )
        return match_status_from_payload(payload)

    def send_server_command(self, server_id: str, command: str) -> None:
        self._request("POST", f"/game-servers/{server_id}/console", data={"line": command})

    def release_server(self, server_id: str) -> None:
        self._request("POST", f"/game-servers/{server_id}/stop")

    def _request(
        self,
        method: str,
        path: str,
        *,
        data: dict[str, str] | None = None,
        allow_not_found: bool = False,
    ) -> httpx.Response:
        def _call() -> httpx.Response:
            try:
                with get_instrumentation().trace(
                    "hosting_call", attrs={"method": method, "path": path}
                ):
                    response = self.client.request(method, path, data=data)
                if response.status_code == 429 or response.status_code >= 500:
                    response.raise_for_status()
            except (httpx.HTTPStatusError, httpx.TransportError) as exc:
                if _should_retry(exc):
                    raise _RetryableHostingError(exc) from exc
                raise
            return response

        def _retry_after(exc: Exception) -> str | None:
            cause = getattr(exc, "cause", None)
            response = getattr(cause, "response", None)
            if response is None:
                return None
            return response.headers.get("Retry-After")

        def _on_retry(attempt: object) -> None:
            get_instrumentation().counter("hosting_retry_total", 1, attrs={"path": path})

        try:
            response = retry_with_backoff(
                _call,
                max_attempts=_RETRY_ATTEMPTS,
                base_delay_ms=int(_RETRY_BASE_DELAY_SECONDS * 1000),
                max_delay_ms=int(_RETRY_MAX_DELAY_SECONDS * 1000),
                max_total_sleep_seconds=_RETRY_TOTAL_WAIT_CAP_SECONDS,
                jitter_seed=17,
                retry_on_exceptions=(_RetryableHostingError,),
                retry_after_getter=_retry_after,
                on_retry=_on_retry,
                sleep_fn=self._sleep,
            )
        except _RetryableHostingError as exc:
            status_code = getattr(getattr(exc.cause, "response", None), "status_code", None)
            raise HostingProviderError(
                f"hosting provider {method} {path} failed: {type(exc.cause).__name__}",
                status_code=status_code,
            ) from exc.cause
        except httpx.HTTPError as exc:
            raise HostingProviderError(
                f"hosting provider {method} {path} failed: {type(exc).__name__}"
            ) from exc

        if response.status_code == 404 and allow_not_found:
            return response
        if response.status_code >= 400:
            raise HostingProviderError(
                f"hosting provider {method} {path} status={response.status_code} "
                f"body={_response_snippet(response)}",
                status_code=response.status_code,
            )
        return response

    def _safe_sleep(self, seconds: float) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            sleep(seconds)
            return
        raise RuntimeError("Blocking retry sleep called from an active event loop")
