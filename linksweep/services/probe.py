from __future__ import annotations

import asyncio
import enum
import logging

import httpx

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "User-Agent": "LinkSweepBot/1.0 (+https://linksweep.local)",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "DNT": "1",
    "Cache-Control": "no-cache",
}


class ProbeResult(str, enum.Enum):
    ALIVE = "alive"
    DEAD = "dead"


def _normalize_error(exc: BaseException) -> str:
    message = str(exc).strip()
    if message:
        return message
    return exc.__class__.__name__


class LivenessProbe:
    """Two-stage reachability check for a single URL.

    Stage one sends HEAD bounded by ``head_timeout``. If HEAD fails with a
    transport error (not its own timeout), stage two retries with GET bounded
    by ``get_timeout``. Status codes are not inspected: any completed exchange
    counts as alive.
    """

    def __init__(
        self,
        head_timeout: float = 5.0,
        get_timeout: float = 3.0,
        transport: httpx.AsyncBaseTransport | None = None,
        headers: dict | None = None,
    ):
        self.head_timeout = head_timeout
        self.get_timeout = get_timeout
        self.transport = transport
        self.headers = dict(headers or DEFAULT_HEADERS)

    @classmethod
    def from_config(cls, config, transport: httpx.AsyncBaseTransport | None = None):
        return cls(
            head_timeout=float(config.get("PROBE_HEAD_TIMEOUT", 5.0)),
            get_timeout=float(config.get("PROBE_GET_TIMEOUT", 3.0)),
            transport=transport,
        )

    @property
    def budget(self) -> float:
        return self.head_timeout + self.get_timeout

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            follow_redirects=True,
            headers=self.headers,
            transport=self.transport,
        )

    async def probe(self, url: str, client: httpx.AsyncClient | None = None) -> ProbeResult:
        if client is None:
            async with self.client() as own_client:
                return await self.probe(url, own_client)

        try:
            await self._attempt(client, "HEAD", url, self.head_timeout)
            logger.debug("Alive (HEAD): %s", url)
            return ProbeResult.ALIVE
        except (asyncio.TimeoutError, httpx.TimeoutException):
            logger.debug("HEAD timed out after %.1fs: %s", self.head_timeout, url)
            return ProbeResult.DEAD
        except Exception as exc:
            logger.debug("HEAD failed for %s: %s", url, _normalize_error(exc))

        try:
            await self._attempt(client, "GET", url, self.get_timeout)
        except Exception as exc:
            logger.debug("GET failed for %s: %s", url, _normalize_error(exc))
            return ProbeResult.DEAD
        logger.debug("Alive (GET): %s", url)
        return ProbeResult.ALIVE

    def check(self, url: str) -> ProbeResult:
        return asyncio.run(self.probe(url))

    async def _attempt(
        self, client: httpx.AsyncClient, method: str, url: str, timeout: float
    ) -> int:
        return await asyncio.wait_for(
            self._request(client, method, url, timeout), timeout=timeout
        )

    async def _request(
        self, client: httpx.AsyncClient, method: str, url: str, timeout: float
    ) -> int:
        # Leaving the stream context closes the response without reading the body.
        async with client.stream(method, url, timeout=timeout) as response:
            return response.status_code
