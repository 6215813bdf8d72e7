"""
Code Description Resolvers

Turn a bare medical code into a human-readable description:
1. NLM Clinical Tables API (ICD-10-CM, HCPCS) - structured search results
2. AAPC code pages (CPT) - HTML crawl, no published rate limit
3. Local codebook files (any family) - see codebook.py
"""

import asyncio
import logging
import os
import re
import time
from pathlib import Path
from typing import Awaitable, Callable, Optional, Protocol, Sequence

import httpx
from bs4 import BeautifulSoup


logger = logging.getLogger(__name__)

CLINICAL_TABLES_BASE_URL = os.getenv(
    "CLINICAL_TABLES_BASE_URL",
    "https://clinicaltables.nlm.nih.gov/api",
)
AAPC_BASE_URL = os.getenv("AAPC_BASE_URL", "https://www.aapc.com/codes/cpt-codes")
CPT_CRAWL_DELAY_SECONDS = float(os.getenv("CPT_CRAWL_DELAY_SECONDS", "3"))
HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", "20"))

_CLINICAL_TABLES_DATASETS = {
    "ICD-10": "icd10cm",
    "HCPCS": "hcpcs",
}

_RANGE_DESC_RE = re.compile(r"under the range - (.+?)\.$")
_CPT_TITLE_RE = re.compile(r"\d{5} (.+)$")


class CodeResolver(Protocol):
    """Capability that maps a code to a description, or None when not found."""

    async def fetch(self, code: str) -> Optional[str]:
        ...


class _HttpResolver:
    """Shared httpx client handling and request pacing for remote resolvers.

    With a positive `crawl_delay`, consecutive requests are spaced at least
    that many seconds apart. Only requests actually sent count.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        crawl_delay: float = 0.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._client = client
        self.crawl_delay = crawl_delay
        self._sleep = sleep
        self._clock = clock
        self._last_request: Optional[float] = None
        self._pace_lock = asyncio.Lock()

    async def _get(self, url: str, **kwargs) -> httpx.Response:
        async with self._pace_lock:
            if self.crawl_delay > 0 and self._last_request is not None:
                remaining = self.crawl_delay - (self._clock() - self._last_request)
                if remaining > 0:
                    logger.info("Waiting %.1f seconds before next request to %s...", remaining, url)
                    await self._sleep(remaining)
            try:
                return await self._get_client().get(url, **kwargs)
            finally:
                self._last_request = self._clock()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=HTTP_TIMEOUT_SECONDS,
                follow_redirects=True,
                headers={"User-Agent": "coding-exam-agent/1.0"},
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def _match_code_pairs(pairs: object, code: str) -> Optional[str]:
    if not isinstance(pairs, list):
        return None
    for pair in pairs:
        if isinstance(pair, list) and len(pair) >= 2 and pair[0] == code:
            return str(pair[1])
    return None


def parse_clinical_tables_response(data: object, code: str) -> Optional[str]:
    """Pick the exact-code description out of a Clinical Tables search payload.

    The API answers `[count, codes, extra, [[code, description], ...]]`; some
    datasets return the bare list of pairs instead.
    """
    if not isinstance(data, list) or not data:
        return None
    if len(data) >= 4 and isinstance(data[3], list):
        return _match_code_pairs(data[3], code)
    if isinstance(data[0], list):
        return _match_code_pairs(data, code)
    return None


class ClinicalTablesResolver(_HttpResolver):
    """ICD-10-CM / HCPCS lookups against the NLM Clinical Tables API."""

    def __init__(self, family: str, client: Optional[httpx.AsyncClient] = None):
        if family not in _CLINICAL_TABLES_DATASETS:
            raise ValueError(f"Clinical Tables has no dataset for {family} codes.")
        super().__init__(client)
        self.family = family
        self.url = f"{CLINICAL_TABLES_BASE_URL}/{_CLINICAL_TABLES_DATASETS[family]}/v3/search"

    async def fetch(self, code: str) -> Optional[str]:
        response = await self._get(self.url, params={"terms": code})
        response.raise_for_status()
        description = parse_clinical_tables_response(response.json(), code)
        if description:
            logger.debug("Found exact match: %s = %s", code, description)
        else:
            logger.info("No description found for %s code %s in API response", self.family, code)
        return description


def parse_aapc_page(html: str) -> Optional[str]:
    """Extract a CPT description (+ lay summary) from an AAPC code page."""
    soup = BeautifulSoup(html, "html.parser")

    description = None
    sub_head = soup.select_one(".sub_head_detail")
    sub_head_text = sub_head.get_text().strip() if sub_head else ""
    if sub_head_text:
        match = _RANGE_DESC_RE.search(sub_head_text)
        description = match.group(1).strip() if match else sub_head_text

    if not description:
        title = soup.select_one("h1.cpt_code")
        title_text = title.get_text().strip() if title else ""
        match = _CPT_TITLE_RE.search(title_text)
        if match:
            description = match.group(1).strip()

    summary = ""
    for selector in ("#cpt_layterms p", "#offlongdesc p"):
        paragraph = soup.select_one(selector)
        if paragraph and paragraph.get_text().strip():
            summary = paragraph.get_text().strip()
            break

    if description and summary:
        return f"{description} Summary: {summary}"
    return description or summary or None


class AAPCResolver(_HttpResolver):
    """CPT lookups scraped from AAPC code pages.

    The site publishes no rate limit; page requests are spaced by
    `crawl_delay` seconds.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        crawl_delay: float = CPT_CRAWL_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(client, crawl_delay=crawl_delay, sleep=sleep, clock=clock)

    async def fetch(self, code: str) -> Optional[str]:
        response = await self._get(f"{AAPC_BASE_URL}/{code}")
        if response.status_code == 404:
            logger.info("CPT code %s not found on AAPC", code)
            return None
        response.raise_for_status()
        return parse_aapc_page(response.text)


class ChainedResolver:
    """Try several resolvers in order; the first description wins."""

    def __init__(self, resolvers: Sequence[CodeResolver]):
        self.resolvers = list(resolvers)

    async def fetch(self, code: str) -> Optional[str]:
        last_error: Optional[Exception] = None
        for resolver in self.resolvers:
            try:
                description = await resolver.fetch(code)
            except Exception as exc:
                logger.warning("%s failed for %s: %s", type(resolver).__name__, code, exc)
                last_error = exc
                continue
            if description:
                return description
        if last_error is not None:
            raise last_error
        return None


def build_default_resolvers(
    codes_dir: Optional[Path] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> dict[str, CodeResolver]:
    """Build one resolver per family: local codebook first, then the remote source."""
    from coding_exam.codebook import LocalCodebook, LocalCodebookResolver, get_codes_dir

    remote: dict[str, CodeResolver] = {
        "CPT": AAPCResolver(client=client),
        "ICD-10": ClinicalTablesResolver("ICD-10", client=client),
        "HCPCS": ClinicalTablesResolver("HCPCS", client=client),
    }
    codes_dir = codes_dir or get_codes_dir()
    if not codes_dir.is_dir():
        return remote

    codebook = LocalCodebook(codes_dir)
    return {
        family: ChainedResolver([LocalCodebookResolver(family, codebook), resolver])
        for family, resolver in remote.items()
    }
