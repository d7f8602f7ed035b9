from __future__ import annotations

import json
import threading
from typing import Any, Callable, List, Optional, Tuple

from loadstage.models import RequestTimings, Response


class FakeTransport:
    """
    In-memory transport for driving the executor without a network.

    status_for receives the 1-based request number (global across threads)
    and returns the status code for that request.
    """

    def __init__(
        self,
        *,
        status_for: Optional[Callable[[int], int]] = None,
        body: Any = None,
        duration_ms: float = 50.0,
        raise_for: Optional[Callable[[int], Optional[Exception]]] = None,
    ) -> None:
        self._status_for = status_for or (lambda n: 200)
        payload = {"message": "world"} if body is None else body
        self._body = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
        self._duration_ms = duration_ms
        self._raise_for = raise_for
        self._lock = threading.Lock()
        # Call history keeps tests deterministic and inspectable.
        self.calls: List[Tuple[str, str]] = []

    @property
    def count(self) -> int:
        with self._lock:
            return len(self.calls)

    def perform(self, method: str, url: str, **kwargs: Any) -> Response:
        with self._lock:
            self.calls.append((method, url))
            number = len(self.calls)
        if self._raise_for is not None:
            exc = self._raise_for(number)
            if exc is not None:
                raise exc
        return Response(
            method=method,
            url=url,
            status=self._status_for(number),
            headers={"content-type": "application/json"},
            body=self._body,
            timings=RequestTimings(
                duration=self._duration_ms,
                waiting=self._duration_ms - 1.0,
                sending=0.5,
                receiving=0.5,
            ),
            bytes_sent=64,
            bytes_received=len(self._body) + 100,
        )
