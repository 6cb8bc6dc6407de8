import asyncio

import aiohttp
import pytest

from market_oracle.data.models import Tier
from market_oracle.data.transport import PRO_KEY_PARAM, HttpTransport
from market_oracle.execution.errors import NetworkOrTimeout, NotFound, RateLimited, UpstreamError


class FakeResponse:
    def __init__(self, status=200, body=None, text=""):
        self.status = status
        self._body = body
        self._text = text

    async def json(self, content_type=None):
        if isinstance(self._body, Exception):
            raise self._body
        return self._body

    async def text(self):
        return self._text

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    """Stands in for aiohttp.ClientSession.get(); records url, params and timeout."""

    def __init__(self, outcome):
        self.outcome = outcome
        self.closed = False
        self.requests = []

    def get(self, url, params=None, timeout=None):
        self.requests.append((url, params, timeout))
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        return self.outcome

    async def close(self):
        self.closed = True


def _transport(outcome, **kw):
    session = FakeSession(outcome)
    t = HttpTransport(
        "https://api.coingecko.com/api/v3",
        "https://pro-api.coingecko.com/api/v3",
        kw.pop("api_key", ""),
        session=session,
        **kw,
    )
    return t, session


class TestBuild:
    def test_public_url_and_params(self):
        t, _ = _transport(FakeResponse())
        url, q = t.build("/coins/markets", {"sparkline": False, "ids": ["a", "b"], "page": 1, "x": None}, Tier.PUBLIC)
        assert url == "https://api.coingecko.com/api/v3/coins/markets"
        assert q == {"sparkline": "false", "ids": "a,b", "page": "1"}

    def test_pro_tier_carries_key(self):
        t, _ = _transport(FakeResponse(), api_key="secret")
        url, q = t.build("coins/bitcoin", {}, Tier.PRO)
        assert url.startswith("https://pro-api.coingecko.com/")
        assert q == {PRO_KEY_PARAM: "secret"}


class TestFetch:
    @pytest.mark.asyncio
    async def test_success_decodes_json(self):
        t, session = _transport(FakeResponse(200, {"gecko_says": "ok"}))
        assert await t.fetch("/ping", timeout=15.0) == {"gecko_says": "ok"}
        assert session.requests[0][2].total == 15.0

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status, error",
        [(404, NotFound), (429, RateLimited), (403, RateLimited), (500, UpstreamError), (302, UpstreamError)],
    )
    async def test_status_mapping(self, status, error):
        t, _ = _transport(FakeResponse(status, text="nope"))
        with pytest.raises(error):
            await t.fetch("/coins/bitcoin", tier=Tier.PRO)

    @pytest.mark.asyncio
    async def test_rate_limit_names_the_tier(self):
        t, _ = _transport(FakeResponse(429))
        with pytest.raises(RateLimited) as exc:
            await t.fetch("/coins/bitcoin", tier=Tier.PRO)
        assert exc.value.tier is Tier.PRO
        assert exc.value.upstream is True

    @pytest.mark.asyncio
    async def test_undecodable_body_is_upstream_error(self):
        t, _ = _transport(FakeResponse(200, ValueError("bad json")))
        with pytest.raises(UpstreamError):
            await t.fetch("/ping")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("exc", [asyncio.TimeoutError(), aiohttp.ClientConnectionError("reset")])
    async def test_network_failures(self, exc):
        t, _ = _transport(exc)
        with pytest.raises(NetworkOrTimeout):
            await t.fetch("/ping")

    @pytest.mark.asyncio
    async def test_injected_session_is_not_closed(self):
        t, session = _transport(FakeResponse())
        await t.close()
        assert session.closed is False
