"""
Request capability backed by httpx.

The executor only ever talks to a Transport: an object with
perform(method, url, **kwargs) -> Response. HttpxTransport is the default
one; tests swap in fakes.

Timing breakdown comes from httpcore trace events. Transport errors and
timeouts are returned as a Response with status 0 so they are measured
like any other failed request.
"""
from __future__ import annotations

import time
from typing import Any, Callable, Dict, Optional, Protocol, runtime_checkable

import httpx

from loadstage.models import RequestTimings, Response

DEFAULT_TIMEOUT_SECONDS = 30.0


@runtime_checkable
class Transport(Protocol):
    """Anything that can issue one request and describe the response."""

    def perform(self, method: str, url: str, **kwargs: Any) -> Response:
        ...


class _TraceRecorder:
    """Collects httpcore trace event timestamps for one request."""

    def __init__(self) -> None:
        self.events: Dict[str, float] = {}

    def __call__(self, event_name: str, info: Dict[str, Any]) -> None:
        # "http11.send_request_headers.started" -> "send_request_headers.started"
        _, _, name = event_name.partition(".")
        self.events.setdefault(name, time.perf_counter())

    def span(self, start: str, end: str) -> float:
        if start in self.events and end in self.events:
            return max(0.0, (self.events[end] - self.events[start]) * 1000.0)
        return 0.0

    def timings(self, started: float, finished: float) -> RequestTimings:
        total = (finished - started) * 1000.0
        events = self.events
        first_io = events.get("connect_tcp.started", events.get("send_request_headers.started"))
        blocked = (first_io - started) * 1000.0 if first_io is not None else 0.0
        sending = self.span("send_request_headers.started", "send_request_body.complete")
        waiting = self.span("send_request_body.complete", "receive_response_headers.complete")
        receiving = self.span("receive_response_headers.complete", "receive_response_body.complete")
        duration = sending + waiting + receiving
        if duration <= 0:
            duration = total
        return RequestTimings(
            duration=duration,
            blocked=max(0.0, blocked),
            connecting=self.span("connect_tcp.started", "connect_tcp.complete"),
            tls_handshaking=self.span("start_tls.started", "start_tls.complete"),
            sending=sending,
            waiting=waiting,
            receiving=receiving,
        )


def _request_size(request: httpx.Request) -> int:
    line = f"{request.method} {request.url.raw_path.decode('ascii', 'replace')} HTTP/1.1\r\n"
    headers = sum(len(k) + len(v) + 4 for k, v in request.headers.raw)
    body = len(request.content) if request.content else 0
    return len(line) + headers + 2 + body


def _response_size(response: httpx.Response) -> int:
    line = f"{response.http_version} {response.status_code} {response.reason_phrase}\r\n"
    headers = sum(len(k) + len(v) + 4 for k, v in response.headers.raw)
    return len(line) + headers + 2 + len(response.content)


class HttpxTransport:
    """
    Synchronous httpx transport shared by every virtual user.

    httpx.Client is thread-safe, so one instance (one connection pool)
    serves the whole run.
    """

    def __init__(
        self,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        headers: Optional[Dict[str, str]] = None,
        client: Optional[httpx.Client] = None,
        follow_redirects: bool = True,
        max_connections: Optional[int] = None,
    ) -> None:
        self._timeout = timeout
        self._owns_client = client is None
        self._client = client or httpx.Client(
            timeout=timeout,
            headers=headers,
            follow_redirects=follow_redirects,
            limits=httpx.Limits(max_connections=max_connections, max_keepalive_connections=None),
        )

    def perform(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[bytes] = None,
        json: Any = None,
        timeout: Optional[float] = None,
    ) -> Response:
        trace = _TraceRecorder()
        started = time.perf_counter()
        try:
            response = self._client.request(
                method,
                url,
                headers=headers,
                params=params,
                content=body,
                json=json,
                timeout=timeout if timeout is not None else self._timeout,
                extensions={"trace": trace},
            )
        except httpx.TimeoutException as exc:
            return self._error_response(method, url, started, f"request timeout: {exc}")
        except httpx.HTTPError as exc:
            return self._error_response(method, url, started, f"{type(exc).__name__}: {exc}")
        finished = time.perf_counter()

        return Response(
            method=method,
            url=str(response.url),
            status=response.status_code,
            headers=dict(response.headers),
            body=response.content,
            timings=trace.timings(started, finished),
            bytes_sent=_request_size(response.request),
            bytes_received=_response_size(response),
        )

    def _error_response(
        self, method: str, url: str, started: float, error: str
    ) -> Response:
        finished = time.perf_counter()
        return Response(
            method=method,
            url=url,
            status=0,
            timings=RequestTimings(duration=(finished - started) * 1000.0),
            error=error,
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "HttpxTransport":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class CallableTransport:
    """Adapts a plain perform(method, url, **kwargs) function to a Transport."""

    def __init__(self, fn: Callable[..., Response]) -> None:
        self._fn = fn

    def perform(self, method: str, url: str, **kwargs: Any) -> Response:
        return self._fn(method, url, **kwargs)
