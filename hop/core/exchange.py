"""
Hop Exchange Objects
====================
Request/response objects handed to plugin hooks, and the structured events
the proxy engine emits for observers.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Union

from multidict import CIMultiDict


@dataclass
class ProxyRequest:
    """An inbound request as it travels through the pipeline.

    ``path`` holds the raw path and query string and may be rewritten;
    ``original_path`` keeps what the client sent. ``headers`` are the
    headers that will be forwarded upstream.
    """
    id: str
    method: str
    path: str
    headers: CIMultiDict
    original_path: str = ""
    body: bytes = b""
    remote: Optional[str] = None
    start_time: float = field(default_factory=time.time)
    matched_prefix: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.original_path:
            self.original_path = self.path


@dataclass
class ProxyResponse:
    """The response that will be returned to the client.

    A request hook that calls :meth:`send` takes ownership of the response:
    the remaining request hooks are skipped and nothing is forwarded.
    """
    status: int = 200
    headers: CIMultiDict = field(default_factory=CIMultiDict)
    body: bytes = b""
    ended: bool = False

    def send(
        self,
        status: int = 200,
        body: Union[bytes, str] = b"",
        headers: Optional[Mapping[str, str]] = None,
        content_type: Optional[str] = None,
    ) -> None:
        if isinstance(body, str):
            body = body.encode("utf-8")
            if content_type is None:
                content_type = "text/plain; charset=utf-8"
        self.status = status
        self.body = body
        if headers:
            for key, value in headers.items():
                self.headers[key] = value
        if content_type:
            self.headers["Content-Type"] = content_type
        self.ended = True


@dataclass
class UpstreamResponse:
    """The target's response, mutable by response hooks before it is sent."""
    status: int
    headers: CIMultiDict
    body: bytes = b""
    reason: str = ""


@dataclass
class RequestEvent:
    id: str
    method: str
    path: str
    start_time: float
    headers: Dict[str, str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "method": self.method,
            "path": self.path,
            "startTime": int(self.start_time * 1000),
            "headers": self.headers,
        }


@dataclass
class ResponseEvent:
    id: str
    status_code: int
    duration: float  # milliseconds
    headers: Dict[str, str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "statusCode": self.status_code,
            "duration": round(self.duration, 2),
            "headers": self.headers,
        }


ProxyEvent = Union[RequestEvent, ResponseEvent]
