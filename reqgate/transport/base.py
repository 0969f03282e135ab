from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Mapping, Optional

from ..models.records import Response


class Transport(ABC):
    """Sends one request and returns the raw response.

    Implementations raise ``TransportFailure`` for anything below HTTP
    (DNS, connect, timeout, protocol errors). Any HTTP status is a response.
    """

    @abstractmethod
    def execute(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: Optional[bytes],
        timeout: float,
    ) -> Response:
        ...
