import json
import logging
from typing import Any

import requests

from services.common.adapters.endpoints import Endpoint, EndpointPool
from services.common.cache import TTLCache
from services.common.errors import RpcError, RpcTimeout

logger = logging.getLogger("rpc")

CACHEABLE_METHODS = {"eth_call", "eth_getLogs", "eth_getBlockByNumber"}
RETRYABLE_STATUS = {429, 502, 503, 504}
RETRYABLE_MARKERS = ("limit", "exceeded", "timeout", "timed out", "too many requests", "unavailable")


def is_retryable(exc: RpcError) -> bool:
    if isinstance(exc, RpcTimeout):
        return True
    if exc.status_code in RETRYABLE_STATUS:
        return True
    msg = str(exc).lower()
    return any(m in msg for m in RETRYABLE_MARKERS)


class JsonRpcClient:
    """JSON-RPC over HTTP with endpoint failover and a read cache.

    A request that fails with a rate-limit or timeout error is retried once
    more on a different endpoint (``max_attempts`` in total).
    """

    def __init__(
        self,
        pool: EndpointPool,
        session: requests.Session | None = None,
        timeout: float = 10.0,
        cache: TTLCache | None = None,
        max_attempts: int = 2,
    ):
        self.pool = pool
        self.session = session or requests.Session()
        self.timeout = timeout
        self.cache = cache
        self.max_attempts = max(1, max_attempts)
        self._id = 0

    def call(self, method: str, params: list | None = None) -> Any:
        params = params or []
        cache_key = None
        if self.cache is not None and method in CACHEABLE_METHODS:
            cache_key = f"{method}_{json.dumps(params, sort_keys=True)}"
            cached = self.cache.get(cache_key)
            if cached is not None:
                logger.debug("cache hit: %s", method)
                return cached

        tried: list[Endpoint] = []
        for attempt in range(1, self.max_attempts + 1):
            endpoint = self.pool.pick(exclude=tried)
            tried.append(endpoint)
            try:
                result = self._post(endpoint, method, params)
            except RpcError as exc:
                self.pool.mark_failure(endpoint)
                if attempt < self.max_attempts and is_retryable(exc):
                    logger.warning("%s failed on %s (%s); retrying on another node", method, endpoint.url, exc)
                    continue
                raise
            self.pool.mark_success(endpoint)
            if cache_key is not None and result is not None:
                self.cache.set(cache_key, result)
            return result
        raise RpcError(f"{method}: no endpoint attempted")

    def _post(self, endpoint: Endpoint, method: str, params: list) -> Any:
        self._id += 1
        payload = {"jsonrpc": "2.0", "id": self._id, "method": method, "params": params}
        try:
            resp = self.session.post(endpoint.url, json=payload, timeout=self.timeout)
        except requests.Timeout as exc:
            raise RpcTimeout(f"{method} timed out after {self.timeout}s", endpoint=endpoint.url) from exc
        except requests.RequestException as exc:
            raise RpcError(f"{method} transport error: {exc}", endpoint=endpoint.url) from exc

        if resp.status_code >= 400:
            raise RpcError(
                f"HTTP {resp.status_code} from {endpoint.url}",
                status_code=resp.status_code,
                endpoint=endpoint.url,
            )
        try:
            data = resp.json()
        except ValueError as exc:
            raise RpcError(f"invalid JSON-RPC response from {endpoint.url}", endpoint=endpoint.url) from exc

        if isinstance(data, dict) and data.get("error"):
            err = data["error"]
            message = err.get("message", str(err)) if isinstance(err, dict) else str(err)
            raise RpcError(f"{method}: {message}", endpoint=endpoint.url)
        return data.get("result") if isinstance(data, dict) else data
