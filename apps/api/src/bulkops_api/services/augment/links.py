from __future__ import annotations

import re
from typing import Protocol

import httpx

INTERNAL_LINK_PATTERN = re.compile(r"\[([^\]]+)\]\((/[a-z0-9-]+/[a-z0-9-]+)\)")
EXTERNAL_LINK_PATTERN = re.compile(r"\[([^\]]+)\]\((https?://[^)\s]+)\)\^?")
ANY_LINK_PATTERN = re.compile(r"\[([^\]]+)\]\(([^)\s]+)\)")

USER_AGENT = "Mozilla/5.0 (compatible; bulkops-link-check/1.0)"


class LinkChecker(Protocol):
    def is_reachable(self, url: str) -> bool: ...


class HttpLinkChecker:
    def __init__(self, *, timeout_seconds: float = 5.0) -> None:
        self._timeout_seconds = timeout_seconds

    def is_reachable(self, url: str) -> bool:
        try:
            response = httpx.head(
                url,
                headers={"User-Agent": USER_AGENT},
                timeout=self._timeout_seconds,
                follow_redirects=False,
            )
        except httpx.HTTPError as exc:
            print(f"[augment] link check failed url={url} error={exc!r}", flush=True)
            return False
        return response.is_success or response.status_code in (301, 302)


def has_internal_link(content: str) -> bool:
    return INTERNAL_LINK_PATTERN.search(content) is not None


def has_external_link(content: str) -> bool:
    return EXTERNAL_LINK_PATTERN.search(content) is not None


def extract_external_urls(content: str) -> list[str]:
    return [match.group(2) for match in EXTERNAL_LINK_PATTERN.finditer(content)]


def strip_links(content: str, urls: set[str]) -> str:
    """Replace markdown links pointing at ``urls`` with their anchor text."""

    def _replace(match: re.Match[str]) -> str:
        if match.group(2) in urls:
            return match.group(1)
        return match.group(0)

    return EXTERNAL_LINK_PATTERN.sub(_replace, content)
