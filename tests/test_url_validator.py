from __future__ import annotations

import asyncio

import httpx
import pytest

from app.services.url_validator import http_probe, is_reachable_status, validate_urls


@pytest.mark.parametrize(
    "status,expected",
    [(200, True), (301, True), (399, True), (403, True), (405, True), (406, True), (429, True),
     (404, False), (410, False), (500, False), (None, True)],
)
def test_is_reachable_status(status, expected):
    assert is_reachable_status(status) is expected


@pytest.mark.asyncio
async def test_validate_urls_filters_dead_links_and_keeps_order():
    statuses = {
        "https://a.com/": 200,
        "https://b.com/": 404,
        "https://c.com/": 403,
        "https://d.com/": 500,
        "https://e.com/": None,
    }

    async def probe(url: str):
        return statuses[url]

    accepted = await validate_urls(list(statuses), [], probe=probe)
    assert accepted == ["https://a.com/", "https://c.com/", "https://e.com/"]


@pytest.mark.asyncio
async def test_validate_urls_brand_hosts_bypass_probe():
    probed: list[str] = []

    async def probe(url: str):
        probed.append(url)
        return 404

    urls = ["https://www.example.com/blocked", "https://docs.example.com/", "https://other.com/"]
    accepted = await validate_urls(urls, ["example.com"], probe=probe)
    assert accepted == ["https://www.example.com/blocked", "https://docs.example.com/"]
    assert probed == ["https://other.com/"]


@pytest.mark.asyncio
async def test_validate_urls_probe_exception_is_soft_accept():
    async def probe(url: str):
        raise RuntimeError("connection reset")

    assert await validate_urls(["https://flaky.com/"], [], probe=probe) == ["https://flaky.com/"]


@pytest.mark.asyncio
async def test_validate_urls_budget_expiry_accepts_pending():
    async def probe(url: str):
        if "slow" in url:
            await asyncio.sleep(5)
        return 404

    accepted = await validate_urls(
        ["https://slow.com/", "https://fast.com/"],
        [],
        budget_s=0.05,
        probe=probe,
    )
    assert accepted == ["https://slow.com/"]


@pytest.mark.asyncio
async def test_validate_urls_respects_concurrency_cap():
    active = 0
    peak = 0

    async def probe(url: str):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1
        return 200

    urls = [f"https://site{i}.com/" for i in range(10)]
    assert await validate_urls(urls, [], concurrency=3, probe=probe) == urls
    assert peak <= 3


@pytest.mark.asyncio
async def test_cancelling_validation_cancels_running_probes():
    started = asyncio.Event()
    cancelled: list[str] = []

    async def probe(url: str):
        started.set()
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            cancelled.append(url)
            raise
        return 200

    validation = asyncio.create_task(
        validate_urls(["https://a.com/", "https://b.com/"], [], budget_s=30, probe=probe)
    )
    await started.wait()
    validation.cancel()
    with pytest.raises(asyncio.CancelledError):
        await validation

    assert sorted(cancelled) == ["https://a.com/", "https://b.com/"]


@pytest.mark.asyncio
async def test_http_probe_falls_back_to_get_when_head_refused():
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.method)
        if request.method == "HEAD":
            return httpx.Response(501)
        return httpx.Response(206)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        status = await http_probe("https://example.com/", client=client)
    assert status == 206
    assert calls == ["HEAD", "GET"]


@pytest.mark.asyncio
async def test_http_probe_network_error_returns_none():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("boom", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        assert await http_probe("https://down.example/", client=client) is None
