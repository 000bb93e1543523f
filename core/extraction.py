# =============================================================================
# core/extraction.py  -  Content Extraction Pipeline
# =============================================================================
#
# WHAT THIS MODULE DOES:
#   Turns a URL into an ExtractionResult (title, content, metadata).  It knows
#   nothing about the store: extraction is a pure function of the URL and
#   whatever the remote server returns.
#
# HOW A URL IS DISPATCHED:
#   The pipeline holds an ORDERED list of extractors.  Each one answers
#   matches(url); the first match handles the URL.  No match is a normal
#   outcome that becomes UnsupportedSource, raised before any network call.
#
#       https://learn.microsoft.com/...      -> DocsSiteExtractor
#       https://github.com/o/r/blob/main/f   -> CodeHostingExtractor
#       https://example.com/                 -> UnsupportedSource
#
#   New sources are added by registering another extractor; nothing else in
#   the pipeline changes.
#
# FETCHING:
#   HttpFetcher wraps httpx.AsyncClient with a bounded timeout.  Any timeout,
#   connection failure or non-2xx status becomes FetchError.  Tests hand the
#   pipeline a fake fetcher instead.
# =============================================================================

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Iterable, Optional, Protocol
from urllib.parse import urlparse

import httpx
from bs4 import BeautifulSoup

from core.errors import FetchError, InsufficientContent, UnsupportedSource, UnsupportedTarget, ValidationError
from core.models import ExtractionResult, utc_timestamp

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
MAX_TITLE_LENGTH = 255
MIN_CONTENT_LENGTH = 100     # a locator must yield MORE than this many chars
MAX_SECTION_HEADERS = 10

BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
}

RAW_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36",
    "Accept": "text/plain,text/markdown,text/*,*/*;q=0.8",
}

_WHITESPACE = re.compile(r"\s+")


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


def _hostname(url: str) -> str:
    return (urlparse(url).hostname or "").lower()


def _stamp(metadata: dict, content: str) -> dict:
    """Add the fields every extractor reports."""
    metadata["extractedAt"] = utc_timestamp()
    metadata["wordCount"] = len(content.split())
    metadata["contentLength"] = len(content)
    return metadata


# =============================================================================
# Fetching
# =============================================================================
@dataclass
class FetchedResource:
    url: str
    status_code: int
    text: str


class Fetcher(Protocol):
    async def fetch(
        self, url: str, headers: Optional[dict] = None, timeout: Optional[float] = None
    ) -> FetchedResource: ...


class HttpFetcher:
    """Fetch a URL with httpx under a bounded timeout.

    A shared ``client`` may be injected (tests pass one built on
    ``httpx.MockTransport``); otherwise each fetch opens a short-lived client.
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, client: Optional[httpx.AsyncClient] = None):
        self.timeout = timeout
        self._client = client

    async def fetch(
        self, url: str, headers: Optional[dict] = None, timeout: Optional[float] = None
    ) -> FetchedResource:
        timeout = timeout or self.timeout
        try:
            if self._client is not None:
                response = await self._client.get(url, headers=headers, timeout=timeout, follow_redirects=True)
            else:
                async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
                    response = await client.get(url, headers=headers)
        except httpx.TimeoutException as exc:
            raise FetchError(f"Timed out after {timeout:g}s fetching {url}", cause=exc) from exc
        except httpx.HTTPError as exc:
            raise FetchError(f"Failed to fetch {url}: {exc}", cause=exc) from exc

        if not response.is_success:
            raise FetchError(
                f"{response.reason_phrase or 'Request failed'} fetching {url}",
                status_code=response.status_code,
            )
        return FetchedResource(url=str(response.url), status_code=response.status_code, text=response.text)


# =============================================================================
# Extractor interface
# =============================================================================
class SourceExtractor(ABC):
    """One content provider.  ``matches`` must not touch the network."""

    name: str = ""
    domain: str = ""

    @abstractmethod
    def matches(self, url: str) -> bool:
        ...

    @abstractmethod
    async def extract(self, url: str, fetcher: Fetcher, timeout: Optional[float] = None) -> ExtractionResult:
        ...


# =============================================================================
# Documentation-site variant (Microsoft Learn)
# =============================================================================
class DocsSiteExtractor(SourceExtractor):
    """HTML documentation pages.

    Content is taken from the first locator whose matched text, once
    whitespace is collapsed, is longer than MIN_CONTENT_LENGTH.  The order
    decides, not how specific the selector is.
    """

    name = "Microsoft Learn"
    domain = "learn.microsoft.com"

    CONTENT_LOCATORS = (
        '[data-bi-name="content"]',
        ".content",
        "main article",
        ".markdown-body",
        "main .content",
        "article",
        "main",
    )

    # (selector, first match only)
    TITLE_LOCATORS = (
        ("h1", True),
        ('[data-bi-name="title"]', False),
        (".content h1", True),
        ("title", True),
    )
    DEFAULT_TITLE = "Untitled Microsoft Learn Document"

    def matches(self, url: str) -> bool:
        host = _hostname(url)
        return host == self.domain or host.endswith("." + self.domain)

    async def extract(self, url: str, fetcher: Fetcher, timeout: Optional[float] = None) -> ExtractionResult:
        logger.debug(f"Extracting from {self.name}: {url}")
        resource = await fetcher.fetch(url, headers=BROWSER_HEADERS, timeout=timeout)
        return self.parse(url, resource.text)

    def parse(self, url: str, html: str) -> ExtractionResult:
        soup = BeautifulSoup(html, "html.parser")
        for tag in soup(["script", "style", "noscript"]):
            tag.decompose()

        content = self._locate_content(soup)
        if content is None:
            raise InsufficientContent(f"Insufficient content extracted from the page: {url}")

        metadata = {
            "source": self.name,
            "url": url,
            "originalUrl": url,
            "domain": self.domain,
        }
        for name in ("description", "keywords", "author"):
            value = self._meta(soup, name)
            if value:
                metadata[name] = value
        headers = self._section_headers(soup)
        if headers:
            metadata["headers"] = headers

        return ExtractionResult(
            title=self._locate_title(soup)[:MAX_TITLE_LENGTH],
            content=content,
            metadata=_stamp(metadata, content),
        )

    def _locate_content(self, soup: BeautifulSoup) -> Optional[str]:
        for selector in self.CONTENT_LOCATORS:
            elements = soup.select(selector)
            if not elements:
                continue
            text = collapse_whitespace(" ".join(el.get_text(" ") for el in elements))
            if len(text) > MIN_CONTENT_LENGTH:
                logger.debug(f"Content located with {selector!r} ({len(text)} chars)")
                return text
        return None

    def _locate_title(self, soup: BeautifulSoup) -> str:
        for selector, first_only in self.TITLE_LOCATORS:
            if first_only:
                element = soup.select_one(selector)
                text = element.get_text(" ") if element else ""
            else:
                text = " ".join(el.get_text(" ") for el in soup.select(selector))
            text = collapse_whitespace(text)
            if text:
                return text
        return self.DEFAULT_TITLE

    @staticmethod
    def _meta(soup: BeautifulSoup, name: str) -> Optional[str]:
        tag = soup.find("meta", attrs={"name": name})
        if tag is None:
            return None
        value = (tag.get("content") or "").strip()
        return value or None

    @staticmethod
    def _section_headers(soup: BeautifulSoup) -> list[dict]:
        headers = []
        for element in soup.select("h2, h3"):
            text = collapse_whitespace(element.get_text(" "))
            if text:
                headers.append({"level": element.name, "text": text})
            if len(headers) >= MAX_SECTION_HEADERS:
                break
        return headers


# =============================================================================
# Code-hosting variant (GitHub)
# =============================================================================
@dataclass(frozen=True)
class RawLocation:
    owner: str
    repo: str
    branch: str
    path: str

    @property
    def raw_url(self) -> str:
        return f"https://{CodeHostingExtractor.RAW_HOST}/{self.owner}/{self.repo}/{self.branch}/{self.path}"

    @property
    def filename(self) -> str:
        return self.path.rsplit("/", 1)[-1]


class CodeHostingExtractor(SourceExtractor):
    """Single files from a code-hosting site, fetched in raw form.

    URL shapes:
        github.com/o/r/blob/<branch>/<path>     -> raw file
        raw.githubusercontent.com/o/r/<b>/<p>   -> as is
        github.com/o/r                          -> README.md on the default branch
        github.com/o/r/tree/...                 -> UnsupportedTarget (directory)
    """

    name = "GitHub"
    domain = "github.com"
    RAW_HOST = "raw.githubusercontent.com"
    HOSTS = frozenset({"github.com", "www.github.com", RAW_HOST})

    DEFAULT_BRANCH = "main"
    # Well-known default branches; a failed fetch on one retries the other once.
    ALTERNATE_BRANCHES = {"main": "master", "master": "main"}

    def matches(self, url: str) -> bool:
        return _hostname(url) in self.HOSTS

    def resolve(self, url: str) -> RawLocation:
        """Map a human-facing URL to its raw-content location (no I/O)."""
        parts = [p for p in urlparse(url).path.split("/") if p]

        if _hostname(url) == self.RAW_HOST:
            if len(parts) < 4:
                raise UnsupportedTarget(f"Raw URL does not point at a file: {url}")
            owner, repo, branch = parts[:3]
            return RawLocation(owner, repo, branch, "/".join(parts[3:]))

        if len(parts) < 2:
            raise UnsupportedTarget(f"Invalid GitHub URL format, expected a repository or file link: {url}")
        owner, repo = parts[0], parts[1]
        if repo.endswith(".git"):
            repo = repo[: -len(".git")]

        if len(parts) == 2:
            return RawLocation(owner, repo, self.DEFAULT_BRANCH, "README.md")
        if parts[2] == "tree":
            raise UnsupportedTarget("Directory URLs not supported. Please provide a direct file link.")
        if parts[2] == "blob" and len(parts) >= 5:
            return RawLocation(owner, repo, parts[3], "/".join(parts[4:]))
        raise UnsupportedTarget(f"Unsupported GitHub URL, expected a file link: {url}")

    async def extract(self, url: str, fetcher: Fetcher, timeout: Optional[float] = None) -> ExtractionResult:
        location = self.resolve(url)
        logger.debug(f"Extracting from {self.name}: {url} -> {location.raw_url}")

        try:
            resource = await fetcher.fetch(location.raw_url, headers=RAW_HEADERS, timeout=timeout)
        except FetchError as first_error:
            alternate = self.ALTERNATE_BRANCHES.get(location.branch)
            if alternate is None:
                raise
            logger.debug(f"Branch {location.branch!r} failed ({first_error}), retrying on {alternate!r}")
            location = replace(location, branch=alternate)
            try:
                resource = await fetcher.fetch(location.raw_url, headers=RAW_HEADERS, timeout=timeout)
            except FetchError as exc:
                raise FetchError(
                    f"{first_error}; retry on branch {alternate!r} also failed: {exc}",
                    cause=exc,
                    status_code=first_error.status_code,
                ) from exc

        content = resource.text
        if not content.strip():
            raise InsufficientContent(f"No content found in the GitHub file: {location.raw_url}")

        filename = location.filename
        stem = re.sub(r"\.[^/.]+$", "", filename)
        extension = filename.rsplit(".", 1)[-1].lower() if "." in filename else "unknown"

        metadata = {
            "source": self.name,
            "url": url,
            "rawUrl": location.raw_url,
            "branch": location.branch,
            "repository": f"{location.owner}/{location.repo}",
            "filename": filename,
            "fileType": extension,
            "domain": self.domain,
        }
        return ExtractionResult(
            title=(stem or filename)[:MAX_TITLE_LENGTH],
            content=content,
            metadata=_stamp(metadata, content),
        )


# =============================================================================
# The pipeline
# =============================================================================
def validate_url(url: str) -> str:
    url = (url or "").strip()
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise ValidationError(f"Invalid URL format: {url!r}")
    return url


class ExtractionPipeline:
    """Ordered extractor registry plus the fetcher they share."""

    def __init__(
        self,
        extractors: Optional[Iterable[SourceExtractor]] = None,
        fetcher: Optional[Fetcher] = None,
    ):
        if extractors is None:
            extractors = (DocsSiteExtractor(), CodeHostingExtractor())
        self.extractors: list[SourceExtractor] = list(extractors)
        self.fetcher: Fetcher = fetcher if fetcher is not None else HttpFetcher()

    def register(self, extractor: SourceExtractor, first: bool = False) -> None:
        if first:
            self.extractors.insert(0, extractor)
        else:
            self.extractors.append(extractor)

    def select(self, url: str) -> Optional[SourceExtractor]:
        for extractor in self.extractors:
            if extractor.matches(url):
                return extractor
        return None

    def check(self, url: str) -> SourceExtractor:
        """Validate ``url`` and return its extractor without any network I/O."""
        extractor = self.select(validate_url(url))
        if extractor is None:
            supported = " and ".join(e.name for e in self.extractors) or "no"
            raise UnsupportedSource(f"Unsupported URL. Only {supported} URLs are supported.")
        return extractor

    async def extract(self, url: str, timeout: Optional[float] = None) -> ExtractionResult:
        url = validate_url(url)
        return await self.check(url).extract(url, self.fetcher, timeout=timeout)
