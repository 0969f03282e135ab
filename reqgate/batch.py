from __future__ import annotations
import time
from typing import Any, Callable, Iterable, Mapping, Optional

import structlog

from .pipeline import RequestPipeline

log = structlog.get_logger()

# option name -> how to fork the pipeline for it
_OPTIONS: dict[str, Callable[[RequestPipeline, Any], RequestPipeline]] = {
    "timeout": lambda p, v: p.timeout(float(v)),
    "with_cache": lambda p, v: p.with_cache(None if v is True else int(v)) if v else p,
    "without_logging": lambda p, v: p.without_logging() if v else p,
    "without_rate_limit": lambda p, v: p.without_rate_limit() if v else p,
    "wait_on_rate_limit": lambda p, v: p.wait_on_rate_limit() if v else p,
    "with_circuit_breaker": lambda p, v: p.with_circuit_breaker() if v else p,
    "as_form": lambda p, v: p.as_form() if v else p,
    "force_http": lambda p, v: p.force_http() if v else p,
    "force_https": lambda p, v: p.force_https() if v else p,
}


def apply_options(pipeline: RequestPipeline, options: Optional[Mapping[str, Any]]) -> RequestPipeline:
    for name, value in (options or {}).items():
        fn = _OPTIONS.get(name)
        if fn is None:
            raise ValueError(f"Unknown request option '{name}'")
        pipeline = fn(pipeline, value)
    return pipeline


class HttpBatch:
    """Run a list of requests through one pipeline at a fixed pace.

    With ``rate_limit(10, 60)`` consecutive calls are spaced 6 seconds apart.
    The pacing is the batch's own; the pipeline never delays on its behalf.
    """

    def __init__(self, pipeline: RequestPipeline, sleep: Callable[[float], None] = time.sleep):
        self.pipeline = pipeline
        self.requests_per_interval = 10
        self.interval_seconds = 60.0
        self.options: dict[str, Any] = {}
        self._sleep = sleep

    def rate_limit(self, requests: int, interval_seconds: float) -> "HttpBatch":
        if requests <= 0 or interval_seconds < 0:
            raise ValueError("requests must be > 0 and interval_seconds >= 0")
        self.requests_per_interval = requests
        self.interval_seconds = float(interval_seconds)
        return self

    def with_options(self, options: Mapping[str, Any]) -> "HttpBatch":
        self.options = dict(options)
        return self

    @property
    def delay(self) -> float:
        return self.interval_seconds / self.requests_per_interval

    def execute(self, requests: Iterable[Mapping[str, Any]]) -> list[dict]:
        """
        Each request is ``{"method", "url", "data", "headers", "options"}``;
        only ``url`` is required. Failures are captured per request.
        """
        results: list[dict] = []
        base = apply_options(self.pipeline, self.options)
        for index, req in enumerate(requests):
            if index > 0:
                self._sleep(self.delay)
            try:
                pipeline = apply_options(base, req.get("options"))
                r = pipeline.request(
                    req.get("method", "GET"), req["url"], req.get("data"), req.get("headers")
                )
                results.append(
                    {
                        "success": True,
                        "status": r.status,
                        "body": r.text,
                        "headers": dict(r.headers),
                        "from_cache": r.from_cache,
                        "request": dict(req),
                    }
                )
            except Exception as e:
                log.warning("batch_request_failed", index=index, url=req.get("url"), error=str(e))
                results.append({"success": False, "error": str(e), "request": dict(req)})
        return results
