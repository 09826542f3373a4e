"""Turns archive references into local rows.

Every lookup returns ``Found`` or ``Unresolvable``; callers skip the latter and
carry on. Remote work (webfinger, post fetches) may run in worker threads, but
all session access stays on the thread that owns the locator.
"""

from __future__ import annotations

import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Callable, Generic, Iterable, Optional, TypeVar, Union

from sqlmodel import Session

from .archive import parse_handle
from .config import FederationSettings
from .federation import Identity, RemoteContentFetcher, RemoteIdentityResolver, RemotePost
from .storage.models import Person, Post, Tag
from .storage.repositories import ContentRepository, PersonRepository, TagRepository

logger = logging.getLogger(__name__)

GUID_PATTERN = re.compile(r"^[A-Za-z0-9_@.:\-]{16,255}$")

T = TypeVar("T")


@dataclass(frozen=True)
class Found(Generic[T]):
    entity: T


@dataclass(frozen=True)
class Unresolvable:
    reference: str
    reason: str


Located = Union[Found[T], Unresolvable]


def is_valid_guid(guid: str) -> bool:
    return bool(GUID_PATTERN.match(guid))


class EntityLocator:
    def __init__(
        self,
        session: Session,
        *,
        resolver: RemoteIdentityResolver,
        fetcher: RemoteContentFetcher,
        settings: FederationSettings | None = None,
        author_handle: Optional[str] = None,
    ) -> None:
        self.session = session
        self.resolver = resolver
        self.fetcher = fetcher
        self.settings = settings or FederationSettings()
        self.author_handle = author_handle
        self.tags = TagRepository(session)
        self.people = PersonRepository(session)
        self.contents = ContentRepository(session)
        self._prefetched_posts: dict[str, Union[RemotePost, Unresolvable]] = {}
        self._deadline: Optional[float] = None

    def start_budget(self) -> None:
        self._deadline = time.monotonic() + self.settings.import_budget

    def _budget_left(self) -> Optional[float]:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def _budget_exhausted(self) -> bool:
        left = self._budget_left()
        return left is not None and left <= 0

    def locate_tag(self, name: str) -> Tag:
        return self.tags.find_or_create_by_name(name)

    def locate_person(self, handle: str) -> Located[Person]:
        parsed = parse_handle(handle)
        if parsed is None:
            return Unresolvable(handle, "malformed handle")
        person = self.people.find_by_handle(str(parsed))
        if person is not None:
            return Found(person)
        if self._budget_exhausted():
            return Unresolvable(handle, "import budget exhausted")
        resolution = self.resolver.resolve(str(parsed))
        if not isinstance(resolution, Identity):
            return Unresolvable(handle, resolution.reason)
        return Found(self.people.store_identity(resolution))

    def _fetch_remote_post(self, guid: str) -> Union[RemotePost, Unresolvable]:
        """Network half of content resolution; touches no session state."""
        if not self.author_handle:
            return Unresolvable(guid, "archive has no author to fetch from")
        resolution = self.resolver.resolve(self.author_handle)
        if not isinstance(resolution, Identity):
            return Unresolvable(guid, f"author {self.author_handle}: {resolution.reason}")
        remote_post = self.fetcher.fetch_post(resolution, guid)
        if remote_post is None:
            return Unresolvable(guid, f"{resolution.host} could not provide the post")
        if remote_post.author != resolution.handle:
            # Warm the cache so storing the post does not hit the network again.
            self.resolver.resolve(remote_post.author)
        return remote_post

    def _needs_remote(self, guid: str) -> bool:
        return (
            is_valid_guid(guid)
            and guid not in self._prefetched_posts
            and self.contents.find_by_guid(guid) is None
        )

    def _run_parallel(
        self,
        references: list[str],
        work: Callable[[str], object],
    ) -> dict[str, object]:
        results: dict[str, object] = {}
        if not references:
            return results
        if self._budget_exhausted():
            for reference in references:
                results[reference] = Unresolvable(reference, "import budget exhausted")
            return results

        executor = ThreadPoolExecutor(
            max_workers=min(self.settings.fetch_workers, len(references)),
            thread_name_prefix="podmigrate-fetch",
        )
        try:
            futures = {executor.submit(work, reference): reference for reference in references}
            done, not_done = wait(futures, timeout=self._budget_left())
            for future in done:
                reference = futures[future]
                error = future.exception()
                if error is not None:
                    logger.warning("Remote lookup for %s failed: %s", reference, error)
                    results[reference] = Unresolvable(reference, str(error))
                else:
                    results[reference] = future.result()
            for future in not_done:
                reference = futures[future]
                results[reference] = Unresolvable(reference, "import budget exhausted")
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
        return results

    def prefetch_contents(self, guids: Iterable[str]) -> None:
        """Fetch missing posts concurrently; results are consumed by ``locate_content``."""
        pending = list(dict.fromkeys(guid for guid in guids if self._needs_remote(guid)))
        if not pending:
            return
        logger.info("Fetching %d subscribed posts from remote pods", len(pending))
        for guid, result in self._run_parallel(pending, self._fetch_remote_post).items():
            self._prefetched_posts[guid] = result  # type: ignore[assignment]

    def prefetch_people(self, handles: Iterable[str]) -> None:
        """Resolve unknown handles concurrently so ``locate_person`` hits the resolver cache."""
        pending = []
        for handle in dict.fromkeys(handles):
            parsed = parse_handle(handle)
            if parsed is not None and self.people.find_by_handle(str(parsed)) is None:
                pending.append(str(parsed))
        if pending:
            self._run_parallel(pending, self.resolver.resolve)

    def locate_content(self, guid: str) -> Located[Post]:
        if not is_valid_guid(guid):
            return Unresolvable(guid, "invalid guid")
        post = self.contents.find_by_guid(guid)
        if post is not None:
            return Found(post)

        remote = self._prefetched_posts.pop(guid, None)
        if remote is None:
            if self._budget_exhausted():
                return Unresolvable(guid, "import budget exhausted")
            remote = self._fetch_remote_post(guid)
        if isinstance(remote, Unresolvable):
            return remote

        author = self.locate_person(remote.author)
        if isinstance(author, Unresolvable):
            return Unresolvable(guid, f"post author {remote.author}: {author.reason}")
        return Found(self.contents.store_remote_post(remote, author.entity))
