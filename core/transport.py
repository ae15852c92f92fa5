"""
transport.py -- All outbound HTTP to the identity provider, developer services
and the anisette server.

Status codes are NOT checked here: provider error pages are meaningful input
for auth.envelope, so every response is handed back as-is. Only failures to
obtain a response at all become TransportError.
"""

import logging
from typing import Any, Optional

import requests

from core.errors import TransportError

logger = logging.getLogger("plumesign.transport")

DEFAULT_TIMEOUT = 30.0


class ProviderTransport:
    """Thin wrapper around one requests.Session.

    max_redirects=3 replaces the requests default of 30 -- these are known
    provider endpoints and none of them legitimately redirect more than once.
    """

    def __init__(self, session: Optional[requests.Session] = None, timeout: float = DEFAULT_TIMEOUT) -> None:
        if session is None:
            session = requests.Session()
            session.max_redirects = 3
        self.session = session
        self.timeout = timeout

    def request(self, method: str, url: str, *, step: Optional[str] = None, **kwargs: Any) -> requests.Response:
        """Send a request and return the response, whatever its status.

        Raises TransportError on connection failures, timeouts and redirect loops.
        """
        kwargs.setdefault("timeout", self.timeout)
        try:
            return self.session.request(method, url, **kwargs)
        except requests.RequestException as e:
            logger.warning("%s %s failed: %s", method, url, e.__class__.__name__)
            raise TransportError(f"Request to {url} failed: {e}", step=step) from e

    def get(self, url: str, **kwargs: Any) -> requests.Response:
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs: Any) -> requests.Response:
        return self.request("POST", url, **kwargs)

    def put(self, url: str, **kwargs: Any) -> requests.Response:
        return self.request("PUT", url, **kwargs)

    def close(self) -> None:
        self.session.close()
