from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from sqlmodel import Session

from .archive import Archive, MalformedArchive, download_archive, load_archive, parse_archive
from .config import FederationSettings, get_db_url, get_federation_settings
from .federation import Identity, RemoteContentFetcher, RemoteIdentityResolver, WebfingerClient
from .locator import EntityLocator
from .mergers import ProfileMerger, SettingsMerger, SocialGraphMerger, validated_settings
from .report import ImportReport
from .storage.db import get_default_db_url, get_engine, get_session, init_db
from .storage.models import User
from .storage.repositories import AccountRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImportOptions:
    import_profile: bool = True
    import_settings: bool = True


class ArchiveImporter:
    """Merges an exported account archive into a local account.

    Bind the target account by assigning ``user`` or by calling
    ``find_or_create_user``, then call ``import_archive``. Only a malformed
    archive is fatal; references that cannot be resolved are skipped and listed
    in the returned report.
    """

    def __init__(
        self,
        archive_hash: dict[str, Any],
        session: Session,
        *,
        resolver: Optional[RemoteIdentityResolver] = None,
        fetcher: Optional[RemoteContentFetcher] = None,
        settings: Optional[FederationSettings] = None,
    ) -> None:
        self.archive_hash = archive_hash
        self.session = session
        self.settings = settings or get_federation_settings()
        self.resolver = resolver or RemoteIdentityResolver(WebfingerClient(self.settings))
        self.fetcher = fetcher or RemoteContentFetcher(self.settings)
        self.user: Optional[User] = None
        self._archive: Optional[Archive] = None
        self._account_created = False

    @property
    def archive(self) -> Archive:
        if self._archive is None:
            try:
                self._archive = parse_archive(self.archive_hash)
            except MalformedArchive as exc:
                logger.error("Cannot import archive: %s", exc)
                raise
        return self._archive

    def find_or_create_user(self, username: str, password: str) -> User:
        archive_user = self.archive.user
        if not archive_user.email:
            raise MalformedArchive("Archive has no email; cannot create an account from it.")

        accounts = AccountRepository(self.session)
        user, created = accounts.find_or_create(
            archive_user.email,
            username,
            password,
            getting_started=False,
            **validated_settings(archive_user),
        )
        self.user = user
        self._account_created = created
        if created:
            ProfileMerger(self.session, ImportReport()).merge(user, archive_user.profile)
        self.session.commit()
        self.session.refresh(user)
        return user

    def _resolve_author(self, report: ImportReport) -> None:
        handle = self.archive.user.author
        if handle is None:
            report.author_resolved = False
            report.skip(
                "author", self.archive.user.profile.author or "", "missing or malformed handle"
            )
            return
        resolution = self.resolver.resolve(str(handle))
        report.author_resolved = isinstance(resolution, Identity)
        if not isinstance(resolution, Identity):
            report.skip("author", str(handle), resolution.reason)

    def import_archive(self, options: Optional[ImportOptions] = None) -> ImportReport:
        options = options or ImportOptions()
        archive_user = self.archive.user
        if self.user is None:
            raise ValueError("No target account; assign user or call find_or_create_user first.")
        user = self.user
        report = ImportReport(account_created=self._account_created)
        logger.info("Importing archive of %s into %s", archive_user.profile.author, user.username)

        author = archive_user.author
        locator = EntityLocator(
            self.session,
            resolver=self.resolver,
            fetcher=self.fetcher,
            settings=self.settings,
            author_handle=str(author) if author is not None else None,
        )
        locator.start_budget()

        self._resolve_author(report)
        if options.import_profile:
            ProfileMerger(self.session, report).merge(user, archive_user.profile)
        if options.import_settings:
            SettingsMerger(self.session, report).merge(user, archive_user)
        SocialGraphMerger(self.session, locator, report).merge(user, archive_user)

        self.session.commit()
        self.session.refresh(user)
        logger.info(
            "Imported archive into %s: %s (%d skipped)",
            user.username,
            ", ".join(f"{key}={value}" for key, value in report.counts.items() if value),
            len(report.skipped),
        )
        return report


def restore_account(
    db_url: Optional[str] = None,
    *,
    path: Optional[str | Path] = None,
    url: Optional[str] = None,
    target_username: Optional[str] = None,
    username: Optional[str] = None,
    password: Optional[str] = None,
    options: Optional[ImportOptions] = None,
) -> ImportReport:
    """Load an archive and merge it into an existing or newly created account."""
    if not db_url:
        db_url = get_db_url() or get_default_db_url()
    settings = get_federation_settings()

    if url:
        data = download_archive(url, timeout=settings.http_timeout)
    elif path is not None:
        data = load_archive(Path(path))
    else:
        raise ValueError("Provide url or path.")

    engine = get_engine(db_url)
    init_db(engine)
    try:
        with get_session(engine) as session:
            importer = ArchiveImporter(data, session, settings=settings)
            if target_username:
                user = AccountRepository(session).find_by_username(target_username)
                if user is None:
                    raise ValueError(f"No account named {target_username!r}")
                importer.user = user
            elif username and password:
                importer.find_or_create_user(username=username, password=password)
            else:
                raise ValueError("Provide target_username, or username and password.")
            return importer.import_archive(options)
    finally:
        engine.dispose()
