"""HTTP client for the remote ingestion API.

Posts are fire-and-forget: ``post()`` queues the request on a worker
thread and returns at once, so a slow or failing API never holds up
the meter cycle.  Failures are logged and dropped, never retried.

The backlog is bounded.  Once ``max_pending`` posts are queued or in
flight, further messages are dropped with a warning.  ``close()``
cancels whatever is still queued and waits only for the post in flight.

Example:
    >>> api = ApiClient("https://ingest.example.com/readings", gateway_id="00124b0012345678")
    >>> api.post({"type": "tempHumidity", "sensorId": "a1b2"})
    >>> api.close()
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor

import requests

from ekmrelay.config import API_MAX_PENDING, API_TIMEOUT_S

log = logging.getLogger(__name__)


class ApiClient:
    """Relays gateway messages and meter readings to the API.

    Args:
        api_url: Endpoint that accepts JSON POSTs.
        gateway_id: Identifier added to every message as ``gatewayId``.
        timeout_s: Per-request timeout in seconds.
        max_pending: Most posts queued or in flight at once.
    """

    def __init__(self, api_url: str, gateway_id: str | None = None, timeout_s: float = API_TIMEOUT_S,
                 max_pending: int = API_MAX_PENDING):
        self._api_url = api_url
        self._timeout_s = timeout_s
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="api")
        self._slots = threading.BoundedSemaphore(max_pending)
        self.gateway_id = gateway_id
        self.dropped = 0

    def post(self, message: dict) -> None:
        """Queue *message* for delivery.  Never raises for transport errors."""
        body = {"gatewayId": self.gateway_id, **message}
        if not self._slots.acquire(blocking=False):
            self.dropped += 1
            log.warning("API backlog full, dropping %s message", body.get("type"))
            return
        log.debug("queueing %s message for %s", body.get("type"), self._api_url)
        future = self._executor.submit(self._send, body)
        # Runs on completion and on cancellation alike.
        future.add_done_callback(lambda _f: self._slots.release())

    def _send(self, body: dict) -> None:
        try:
            res = requests.post(self._api_url, json=body, timeout=self._timeout_s)
        except requests.exceptions.RequestException as exc:
            log.error("error posting to API: %s", exc)
            return

        if res.status_code == 200:
            log.info("sent %s message successfully", body.get("type"))
        else:
            log.error("error posting to API, status code %d: %s", res.status_code, res.text)

    def close(self) -> None:
        """Cancel queued posts, wait for the one in flight, stop the worker."""
        self._executor.shutdown(wait=True, cancel_futures=True)
