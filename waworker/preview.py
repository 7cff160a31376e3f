from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from bs4 import BeautifulSoup


LOGGER = logging.getLogger("waworker.preview")

_PREVIEW_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml",
}


@dataclass(frozen=True, slots=True)
class LinkPreview:
    url: str
    title: Optional[str] = None
    description: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.title and not self.description


def _meta_content(soup: BeautifulSoup, *names: str) -> Optional[str]:
    for name in names:
        tag = soup.find("meta", attrs={"property": name}) or soup.find(
            "meta", attrs={"name": name}
        )
        if tag is None:
            continue
        content = (tag.get("content") or "").strip()
        if content:
            return content
    return None


def parse_link_preview(url: str, html: str) -> LinkPreview:
    soup = BeautifulSoup(html, "html.parser")
    title = _meta_content(soup, "og:title", "twitter:title")
    if not title and soup.title and soup.title.string:
        title = soup.title.string.strip() or None
    description = _meta_content(
        soup, "og:description", "twitter:description", "description"
    )
    return LinkPreview(url=url, title=title, description=description)


async def fetch_link_preview(url: str, *, client: httpx.AsyncClient) -> LinkPreview:
    """Fetch ``url`` and extract title and description.

    Network and HTTP errors yield an empty preview; callers decide on
    placeholders.
    """

    try:
        response = await client.get(url, headers=_PREVIEW_HEADERS, follow_redirects=True)
    except httpx.HTTPError as exc:
        LOGGER.warning("event=preview_fetch_failed url=%s error=%s", url, exc)
        return LinkPreview(url=url)
    if not response.is_success:
        LOGGER.warning(
            "event=preview_fetch_failed url=%s status=%s", url, response.status_code
        )
        return LinkPreview(url=url)
    return parse_link_preview(url, response.text)


__all__ = ["LinkPreview", "fetch_link_preview", "parse_link_preview"]
