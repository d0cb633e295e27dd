from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import httpx
from loguru import logger

from app.services.domain import is_audited_url

# Bot-defended sites often answer automation with these; the page itself exists.
SOFT_ACCEPT_STATUSES = frozenset({403, 405, 406, 429})
USER_AGENT = "Mozilla/5.0 (compatible; VisibilityBot/1.0; +https://optiview.ai/bot)"

Probe = Callable[[str], Awaitable[int | None]]


def is_reachable_status(status: int | None) -> bool:
    """None means the probe could not complete; that counts as reachable."""
    if status is None:
        return True
    return 200 <= status < 400 or status in SOFT_ACCEPT_STATUSES


async def http_probe(url: str, *, client: httpx.AsyncClient) -> int | None:
    """HEAD the URL, retrying once with a one-byte ranged GET when HEAD is refused."""
    try:
        response = await client.head(url)
        if response.status_code in (405, 501):
            response = await client.get(url, headers={"Range": "bytes=0-0"})
        return response.status_code
    except httpx.HTTPError as exc:
        logger.debug(f"Validation probe error for {url}: {exc!r}")
        return None


async def validate_urls(
    urls: list[str],
    brand_hosts: list[str] | None = None,
    *,
    budget_s: float = 15.0,
    concurrency: int = 8,
    probe: Probe | None = None,
) -> list[str]:
    """Return the URLs that look live, preserving input order.

    Brand hosts (the audited domain and its aliases) skip probing. Probes that
    error or are still running when the total budget expires are accepted.
    """
    if not urls:
        return []

    brand_hosts = [h for h in (brand_hosts or []) if h]
    to_probe = [
        url for url in dict.fromkeys(urls)
        if not (brand_hosts and is_audited_url(url, brand_hosts[0], brand_hosts[1:]))
    ]
    statuses: dict[str, int | None] = {}

    if to_probe:
        semaphore = asyncio.Semaphore(max(concurrency, 1))
        owned_client: httpx.AsyncClient | None = None
        if probe is None:
            owned_client = httpx.AsyncClient(
                timeout=httpx.Timeout(min(budget_s, 8.0)),
                follow_redirects=True,
                headers={"User-Agent": USER_AGENT},
            )

            async def probe(url: str) -> int | None:
                return await http_probe(url, client=owned_client)

        async def run_one(url: str) -> None:
            async with semaphore:
                try:
                    statuses[url] = await probe(url)
                except Exception as exc:
                    logger.debug(f"Validation probe raised for {url}: {exc!r}")
                    statuses[url] = None

        tasks = [asyncio.create_task(run_one(url)) for url in to_probe]
        try:
            _, pending = await asyncio.wait(tasks, timeout=max(budget_s, 0.0))
            if pending:
                logger.info(f"Validation budget expired with {len(pending)} probes pending; accepting them")
        finally:
            # Also reached when the caller is cancelled mid-wait.
            unfinished = [task for task in tasks if not task.done()]
            for task in unfinished:
                task.cancel()
            if unfinished:
                await asyncio.gather(*unfinished, return_exceptions=True)
            if owned_client is not None:
                await owned_client.aclose()

    accepted = [url for url in urls if is_reachable_status(statuses.get(url))]
    rejected = len(urls) - len(accepted)
    if rejected:
        logger.debug(f"Validation rejected {rejected}/{len(urls)} URLs")
    return accepted
