"""
Download Link Extraction
========================

Finds candidate download links in an article page. Two kinds of anchors are
recognised: redirect anchors whose ``url`` query parameter carries a base64
encoded target, and anchors pointing directly at a known file host.
"""

import base64
import binascii
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence
from urllib.parse import parse_qs, urljoin, urlparse

from bs4 import BeautifulSoup

from ..config.settings import DEFAULT_FILE_HOSTS
from ..utils.logging import get_logger_for_component


@dataclass(frozen=True)
class DownloadLink:
    """Download link found on an article page."""
    url: str
    host: str


def host_from_url(url: str) -> str:
    """Registrable-looking host: the last two labels of the hostname."""
    try:
        hostname = urlparse(url).hostname
    except ValueError:
        return "unknown"
    if not hostname:
        return "unknown"
    return ".".join(hostname.split(".")[-2:])


def _is_http_url(url: str) -> bool:
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def decode_redirect_target(href: str, page_url: str, param: str = "url") -> Optional[str]:
    """Decode the base64 target carried by a redirect anchor.

    Returns:
        The decoded http(s) url, or None if the anchor is malformed
    """
    try:
        query = urlparse(urljoin(page_url, href)).query
    except ValueError:
        return None

    values = parse_qs(query).get(param)
    if not values:
        return None

    # parse_qs turns '+' into ' '
    encoded = values[0].strip().replace(" ", "+")
    encoded = encoded.replace("-", "+").replace("_", "/")
    encoded += "=" * (-len(encoded) % 4)

    try:
        decoded = base64.b64decode(encoded).decode("utf-8").strip()
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None

    if not decoded.startswith(("http://", "https://")) or not _is_http_url(decoded):
        return None
    return decoded


class LinkExtractor:
    """Extracts and ranks download links from article markup."""

    def __init__(
        self,
        file_hosts: Iterable[str] = DEFAULT_FILE_HOSTS,
        preferred_hosts: Sequence[str] = ("novafile", "nfile"),
        redirect_pattern: str = "engine/go.php?url=",
    ):
        self.file_hosts = [h.lower() for h in file_hosts]
        self.preferred_hosts = [h.lower() for h in preferred_hosts]
        self.redirect_pattern = redirect_pattern
        self.logger = get_logger_for_component("link_extractor")

    def extract(self, markup: str, page_url: str) -> List[DownloadLink]:
        """Extract download links in first-seen order without duplicates.

        Args:
            markup: Article page HTML
            page_url: Url the page was fetched from, for relative hrefs

        Returns:
            Unique download links
        """
        soup = BeautifulSoup(markup, "html.parser")
        anchors = soup.find_all("a", href=True)

        found: List[str] = []

        for anchor in anchors:
            href = anchor["href"]
            if self.redirect_pattern in href:
                target = decode_redirect_target(href, page_url)
                if target:
                    found.append(target)
                else:
                    self.logger.debug(f"Skipping undecodable redirect anchor: {href[:80]}")

        for anchor in anchors:
            href = anchor["href"].strip()
            lowered = href.lower()
            if not any(host in lowered for host in self.file_hosts):
                continue
            if not lowered.startswith(("http://", "https://")):
                try:
                    href = urljoin(page_url, href)
                except ValueError:
                    self.logger.debug(f"Skipping malformed file host anchor: {href[:80]}")
                    continue
            if _is_http_url(href):
                found.append(href)

        links: List[DownloadLink] = []
        seen = set()
        for url in found:
            if url in seen:
                continue
            seen.add(url)
            links.append(DownloadLink(url=url, host=host_from_url(url)))

        self.logger.debug(f"Found {len(links)} download links on {page_url}")
        return links

    def choose_preferred(self, links: Sequence[DownloadLink]) -> Optional[DownloadLink]:
        """Pick the first link on the highest-priority host, else the first link."""
        if not links:
            return None
        for preferred in self.preferred_hosts:
            for link in links:
                if preferred in link.host.lower():
                    return link
        return links[0]
