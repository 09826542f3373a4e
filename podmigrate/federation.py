from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Union
from urllib.parse import quote

import requests

from .archive import parse_handle
from .config import FederationSettings
from .dates import coerce_datetime

logger = logging.getLogger(__name__)

WEBFINGER_PATH = "/.well-known/webfinger"
SEED_LOCATION_REL = "http://joindiaspora.com/seed_location"
HCARD_REL = "http://microformats.org/profile/hcard"
PROFILE_PAGE_REL = "http://webfinger.net/rel/profile-page"
NOT_FOUND_STATUSES = {404, 410}


@dataclass(frozen=True)
class Identity:
    handle: str
    host: str
    pod_url: str
    guid: Optional[str] = None
    profile_url: Optional[str] = None
    links: tuple[dict[str, str], ...] = field(default=(), compare=False)


@dataclass(frozen=True)
class NotFound:
    handle: str
    reason: str = "not found"


@dataclass(frozen=True)
class Unreachable:
    handle: str
    reason: str = "unreachable"


Resolution = Union[Identity, NotFound, Unreachable]


@dataclass(frozen=True)
class RemotePost:
    guid: str
    author: str
    text: str = ""
    public: bool = True
    created_at: Optional[datetime] = None


def _link_href(links: list[dict[str, Any]], rel: str) -> Optional[str]:
    for link in links:
        if link.get("rel") == rel and isinstance(link.get("href"), str):
            return link["href"]
    return None


def _guid_from_hcard(href: Optional[str]) -> Optional[str]:
    if not href:
        return None
    tail = href.rstrip("/").rsplit("/", 1)[-1]
    return tail or None


def parse_webfinger_document(handle: str, host: str, scheme: str, document: Any) -> Resolution:
    if not isinstance(document, dict):
        return Unreachable(handle, "webfinger response is not a JSON object")
    subject = document.get("subject")
    if isinstance(subject, str) and subject.lower() != f"acct:{handle}":
        return Unreachable(handle, f"webfinger subject mismatch: {subject}")

    raw_links = document.get("links")
    links = [link for link in raw_links if isinstance(link, dict)] if isinstance(raw_links, list) else []
    pod_url = _link_href(links, SEED_LOCATION_REL) or f"{scheme}://{host}/"
    if not pod_url.endswith("/"):
        pod_url += "/"
    return Identity(
        handle=handle,
        host=host,
        pod_url=pod_url,
        guid=_guid_from_hcard(_link_href(links, HCARD_REL)),
        profile_url=_link_href(links, PROFILE_PAGE_REL),
        links=tuple(
            {key: str(value) for key, value in link.items() if isinstance(value, str)}
            for link in links
        ),
    )


class WebfingerClient:
    """Discovery lookup for ``id@host`` handles."""

    def __init__(self, settings: FederationSettings | None = None) -> None:
        self.settings = settings or FederationSettings()

    def _headers(self) -> dict[str, str]:
        return {
            "Accept": "application/jrd+json, application/json",
            "User-Agent": self.settings.user_agent,
        }

    def build_url(self, handle: str, host: str, scheme: str = "https") -> str:
        resource = quote(f"acct:{handle}", safe=":@")
        return f"{scheme}://{host}{WEBFINGER_PATH}?resource={resource}"

    def _discover_with_scheme(self, handle: str, host: str, scheme: str) -> Resolution:
        url = self.build_url(handle, host, scheme)
        try:
            response = requests.get(url, headers=self._headers(), timeout=self.settings.http_timeout)
        except requests.RequestException as exc:
            logger.warning("Webfinger lookup for %s failed: %s", handle, exc)
            return Unreachable(handle, str(exc))

        if response.status_code in NOT_FOUND_STATUSES:
            return NotFound(handle, f"webfinger returned {response.status_code}")
        if not response.ok:
            return Unreachable(handle, f"webfinger returned {response.status_code}")
        try:
            document = response.json()
        except ValueError:
            return Unreachable(handle, "webfinger response is not valid JSON")
        return parse_webfinger_document(handle, host, scheme, document)

    def discover(self, handle: str) -> Resolution:
        parsed = parse_handle(handle)
        if parsed is None:
            return NotFound(handle, "malformed handle")
        normalized = str(parsed)
        result = self._discover_with_scheme(normalized, parsed.host, "https")
        if isinstance(result, Unreachable) and self.settings.allow_http_fallback:
            logger.info("Retrying webfinger lookup for %s over http", normalized)
            result = self._discover_with_scheme(normalized, parsed.host, "http")
        return result


class RemoteIdentityResolver:
    """Resolves handles once per import run; safe to share between fetch workers."""

    def __init__(self, client: WebfingerClient | None = None) -> None:
        self.client = client or WebfingerClient()
        self._cache: dict[str, Resolution] = {}
        self._lock = threading.Lock()

    def resolve(self, handle: str) -> Resolution:
        parsed = parse_handle(handle)
        if parsed is None:
            return NotFound(handle, "malformed handle")
        key = str(parsed)
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None:
            return cached

        result = self.client.discover(key)
        if isinstance(result, Identity):
            logger.info("Resolved %s via %s", key, result.pod_url)
        else:
            logger.warning("Could not resolve %s: %s", key, result.reason)
        with self._lock:
            self._cache.setdefault(key, result)
        return result


class RemoteContentFetcher:
    """Fetches public posts from the pod that serves a resolved identity."""

    def __init__(self, settings: FederationSettings | None = None) -> None:
        self.settings = settings or FederationSettings()

    def build_url(self, identity: Identity, guid: str) -> str:
        return f"{identity.pod_url}fetch/post/{quote(guid, safe='')}"

    def fetch_post(self, identity: Identity, guid: str) -> Optional[RemotePost]:
        url = self.build_url(identity, guid)
        try:
            response = requests.get(
                url,
                headers={"Accept": "application/json", "User-Agent": self.settings.user_agent},
                timeout=self.settings.http_timeout,
            )
        except requests.RequestException as exc:
            logger.warning("Fetching post %s from %s failed: %s", guid, identity.host, exc)
            return None
        if not response.ok:
            logger.warning(
                "Fetching post %s from %s returned %d", guid, identity.host, response.status_code
            )
            return None
        try:
            payload = response.json()
        except ValueError:
            logger.warning("Post %s from %s is not valid JSON", guid, identity.host)
            return None
        return parse_remote_post(guid, payload)


def parse_remote_post(guid: str, payload: Any) -> Optional[RemotePost]:
    if not isinstance(payload, dict):
        return None
    if payload.get("guid") != guid:
        logger.warning("Fetched post does not match requested guid %s", guid)
        return None
    author = payload.get("author")
    if parse_handle(author) is None:
        logger.warning("Fetched post %s has no valid author", guid)
        return None
    public = payload.get("public", True)
    if public is not True:
        logger.warning("Fetched post %s is not public", guid)
        return None
    text = payload.get("text")
    return RemotePost(
        guid=guid,
        author=str(parse_handle(author)),
        text=text if isinstance(text, str) else "",
        public=True,
        created_at=coerce_datetime(payload.get("created_at")),
    )
