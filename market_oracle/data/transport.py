# data/transport.py - MARKET ORACLE - UPSTREAM HTTP PRIMITIVE - 2026 v1.1
# Patch vs v1.0:
# - Status -> typed error law: 404 NotFound, 429/403 RateLimited, other non-2xx UpstreamError
# - Connection errors + timeouts -> NetworkOrTimeout
# - Per-attempt timeout (retry path asks for a longer one)

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

import aiohttp

from market_oracle.data.models import Tier
from market_oracle.execution.errors import NetworkOrTimeout, NotFound, RateLimited, UpstreamError
from market_oracle.utils.logging import log_data

PRO_KEY_PARAM = "x_cg_pro_api_key"


class HttpTransport:
    """
    GET <base>/<endpoint>?<params> -> decoded JSON.
    Pro tier uses its own base url and carries the API key as a query param.
    """

    def __init__(
        self,
        public_base_url: str,
        pro_base_url: str = "",
        api_key: str = "",
        default_timeout: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.public_base_url = public_base_url.rstrip("/")
        self.pro_base_url = (pro_base_url or public_base_url).rstrip("/")
        self.api_key = api_key or ""
        self.default_timeout = float(default_timeout)
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.default_timeout),
                headers={"Accept": "application/json"},
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    def build(self, endpoint: str, params: Optional[Dict[str, Any]], tier: Tier):
        base = self.pro_base_url if tier is Tier.PRO else self.public_base_url
        url = f"{base}/{str(endpoint).lstrip('/')}"
        q = {k: _param(v) for k, v in (params or {}).items() if v is not None}
        if tier is Tier.PRO and self.api_key:
            q[PRO_KEY_PARAM] = self.api_key
        return url, q

    async def fetch(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        tier: Tier = Tier.PUBLIC,
        timeout: Optional[float] = None,
    ) -> Any:
        tier = Tier(tier)
        url, q = self.build(endpoint, params, tier)
        session = await self._get_session()
        t = aiohttp.ClientTimeout(total=float(timeout or self.default_timeout))

        try:
            async with session.get(url, params=q, timeout=t) as resp:
                status = resp.status
                if status == 404:
                    raise NotFound(f"404 for {endpoint}", endpoint=endpoint)
                if status in (429, 403):
                    raise RateLimited(tier, f"HTTP {status} on {tier.value} tier", endpoint=endpoint)
                if status < 200 or status >= 300:
                    body = (await resp.text())[:200]
                    raise UpstreamError(status, f"HTTP {status}: {body}", endpoint=endpoint)
                try:
                    return await resp.json(content_type=None)
                except ValueError as e:
                    raise UpstreamError(status, f"undecodable body: {e}", endpoint=endpoint)
        except asyncio.TimeoutError as e:
            log_data.error(f"UPSTREAM TIMEOUT | {tier.value} {endpoint} after {t.total}s")
            raise NetworkOrTimeout(f"timeout after {t.total}s", endpoint=endpoint) from e
        except aiohttp.ClientError as e:
            log_data.error(f"UPSTREAM NETWORK ERROR | {tier.value} {endpoint}: {e}")
            raise NetworkOrTimeout(str(e) or e.__class__.__name__, endpoint=endpoint) from e


def _param(v: Any) -> Any:
    if isinstance(v, bool):
        return "true" if v else "false"
    if isinstance(v, (list, tuple, set)):
        return ",".join(str(x) for x in v)
    return str(v) if not isinstance(v, str) else v
