"""
Sinks that receive a copy of the session every time a sample is accepted.
Delivery is best effort: failures are logged and never reach the session.
"""

from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor

import requests
import structlog
from structlog.types import FilteringBoundLogger


class AppendLogSink(ABC):
    logger: FilteringBoundLogger

    def __init__(self):
        self.logger = structlog.get_logger()

    @abstractmethod
    def send(self, payload: dict):
        """
        Hand over ``{"sessionId": ..., "vertices": [...]}``. Must not block
        on the network.
        """
        raise NotImplementedError

    def close(self):
        return


class NullSink(AppendLogSink):
    def send(self, payload: dict):
        self.logger.debug("sink.null.dropped", session_id=payload.get("sessionId"))


class HTTPAppendLogSink(AppendLogSink):
    """
    POSTs the payload as JSON from a single background worker, so requests
    go out in the order samples were taken.
    """

    url: str
    timeout: float

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        session: requests.Session | None = None,
    ):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()
        self._executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="fieldsurvey-sink"
        )
        super().__init__()

    def _post(self, payload: dict) -> bool:
        log = self.logger.bind(
            url=self.url,
            session_id=payload.get("sessionId"),
            count=len(payload.get("vertices", [])),
        )

        try:
            response = self.session.post(self.url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            log.warning("sink.http.failed", error=str(e))
            return False

        if not response.ok:
            log.warning("sink.http.rejected", status=response.status_code)
            return False

        log.debug("sink.http.delivered", status=response.status_code)
        return True

    def send(self, payload: dict):
        return self._executor.submit(self._post, payload)

    def close(self):
        """
        Wait for queued deliveries, then release the connection pool.
        """
        self._executor.shutdown(wait=True)
        self.session.close()
