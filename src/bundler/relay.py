"""JSON-RPC client for the atomic bundle relay.

A bundle is posted to every configured endpoint at once and the first one to
accept it wins. HTTP 429 is retried per endpoint with capped exponential
backoff plus jitter. A small cooldown file spaces consecutive submissions, also
across separate runs of the tool.
"""

import asyncio
import json
import logging
import random
import time
from collections.abc import Awaitable, Callable, Sequence
from pathlib import Path
from typing import Any

import httpx

from bundler.errors import RelayError

log = logging.getLogger("bundler.relay")


class RelayClient:
    def __init__(
        self,
        urls: Sequence[str],
        *,
        timeout: float = 10.0,
        max_retries: int = 5,
        initial_backoff: float = 2.0,
        max_backoff: float = 20.0,
        cooldown_file: str | Path | None = None,
        cooldown_seconds: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.urls = [u for u in urls if u]
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.cooldown_file = Path(cooldown_file) if cooldown_file else None
        self.cooldown_seconds = cooldown_seconds
        self.transport = transport
        self._sleep = sleep
        self._clock = clock
        self._request_id = 0

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    def _payload(self, method: str, params: list) -> dict[str, Any]:
        self._request_id += 1
        return {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}

    # =========================================================================
    # Cooldown
    # =========================================================================

    def cooldown_remaining(self) -> float:
        if self.cooldown_file is None or not self.cooldown_file.is_file():
            return 0.0
        try:
            last = float(json.loads(self.cooldown_file.read_text()).get("last_submission", 0))
        except (OSError, ValueError, AttributeError) as e:
            log.debug("Unreadable cooldown file %s: %s", self.cooldown_file, e)
            return 0.0
        return max(0.0, self.cooldown_seconds - (self._clock() - last))

    def touch_cooldown(self) -> None:
        if self.cooldown_file is None:
            return
        try:
            self.cooldown_file.parent.mkdir(parents=True, exist_ok=True)
            self.cooldown_file.write_text(json.dumps({"last_submission": self._clock()}))
        except OSError as e:
            log.warning("Could not write cooldown file %s: %s", self.cooldown_file, e)

    # =========================================================================
    # Requests
    # =========================================================================

    def _backoff(self, attempt: int) -> float:
        return min(self.initial_backoff * 2 ** attempt, self.max_backoff) + random.uniform(0, 1)

    async def _rpc(self, http: httpx.AsyncClient, url: str, payload: dict) -> Any:
        """POST one JSON-RPC request, retrying only on 429. Returns `result`."""
        for attempt in range(self.max_retries):
            try:
                resp = await http.post(url, json=payload)
            except httpx.HTTPError as e:
                raise RelayError(f"{url}: {e.__class__.__name__}: {e}") from e

            if resp.status_code == 429 and attempt < self.max_retries - 1:
                if attempt == 0:
                    self.touch_cooldown()
                delay = self._backoff(attempt)
                log.warning("Rate limited (429) by %s, retrying in %.1fs (attempt %s/%s)",
                            url, delay, attempt + 1, self.max_retries)
                await self._sleep(delay)
                continue
            if resp.status_code != 200:
                raise RelayError(f"{url}: HTTP {resp.status_code}: {resp.text[:200]}")

            try:
                data = resp.json()
            except ValueError as e:
                raise RelayError(f"{url}: invalid JSON response") from e
            if not isinstance(data, dict):
                raise RelayError(f"{url}: expected a JSON-RPC object, got {type(data).__name__}")
            if data.get("error"):
                err = data["error"]
                msg = err.get("message", err) if isinstance(err, dict) else err
                raise RelayError(f"{url}: {msg}")
            if data.get("result") is None:
                raise RelayError(f"{url}: empty result")
            return data["result"]
        raise RelayError(f"{url}: still rate limited after {self.max_retries} attempts")

    async def send_bundle(self, blobs: Sequence[str]) -> str:
        """Submit signed blobs as one all-or-nothing bundle. Returns the bundle id."""
        if not blobs:
            raise RelayError("refusing to send an empty bundle")
        if not self.urls:
            raise RelayError("no relay endpoints configured")

        wait = self.cooldown_remaining()
        if wait > 0:
            log.info("Relay cooldown: waiting %.1fs before submitting", wait)
            await self._sleep(wait)

        payload = self._payload("sendBundle", [list(blobs)])
        log.info("Sending bundle of %s transactions to %s relay endpoints", len(blobs), len(self.urls))
        errors: list[str] = []
        async with self._client() as http:
            tasks = [asyncio.create_task(self._rpc(http, url, payload), name=f"relay-{i}")
                     for i, url in enumerate(self.urls)]
            try:
                for fut in asyncio.as_completed(tasks):
                    try:
                        bundle_id = await fut
                    except RelayError as e:
                        log.debug("Relay endpoint failed: %s", e)
                        errors.append(str(e))
                        continue
                    self.touch_cooldown()
                    log.info("Bundle accepted: %s", bundle_id)
                    return str(bundle_id)
            finally:
                for t in tasks:
                    t.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
        raise RelayError("no relay endpoint accepted the bundle: " + "; ".join(errors))

    async def bundle_status(self, bundle_id: str) -> dict[str, Any] | None:
        """First status any endpoint reports for `bundle_id`, or None when unknown."""
        if not self.urls:
            raise RelayError("no relay endpoints configured")
        errors: list[str] = []
        async with self._client() as http:
            for url in self.urls:
                try:
                    result = await self._rpc(http, url, self._payload("getBundleStatuses", [[bundle_id]]))
                except RelayError as e:
                    errors.append(str(e))
                    continue
                value = result.get("value") if isinstance(result, dict) else result
                if isinstance(value, list):
                    return value[0] if value else None
                return value or None
        raise RelayError("bundle status unavailable: " + "; ".join(errors))
