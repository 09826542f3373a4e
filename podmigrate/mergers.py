from __future__ import annotations

import logging
import re
from typing import Any, Callable

from sqlmodel import Session

from .archive import ArchiveUser, ProfileData
from .dates import coerce_date
from .locator import EntityLocator, Unresolvable
from .report import ImportReport
from .storage.models import User
from .storage.repositories import AccountRepository, AspectRepository, EdgeRepository

logger = logging.getLogger(__name__)

LANGUAGE_PATTERN = re.compile(r"^[a-z]{2,3}(?:[-_][A-Za-z0-9]{2,8})*$")
MAX_NAME_LENGTH = 32
MAX_TEXT_LENGTH = 255
MAX_BIO_LENGTH = 65535
MAX_PROFILE_TAGS = 5


class FieldValidationError(ValueError):
    """A single archive value cannot be written to the account."""


def _text(limit: int) -> Callable[[Any], str]:
    def validate(value: Any) -> str:
        text = str(value).strip()
        if len(text) > limit:
            raise FieldValidationError(f"longer than {limit} characters")
        return text

    return validate


def _birthday(value: Any):
    parsed = coerce_date(value)
    if parsed is None:
        raise FieldValidationError(f"not a date: {value!r}")
    return parsed


def _image_url(value: Any) -> str:
    url = str(value).strip()
    if not (url.startswith("https://") or url.startswith("http://") or url.startswith("/")):
        raise FieldValidationError(f"not an image URL: {url!r}")
    if len(url) > MAX_TEXT_LENGTH:
        raise FieldValidationError(f"longer than {MAX_TEXT_LENGTH} characters")
    return url


def _tag_string(value: Any) -> str:
    text = str(value).strip()
    tags = [word for word in text.split() if word.startswith("#")]
    if len(tags) > MAX_PROFILE_TAGS:
        raise FieldValidationError(f"more than {MAX_PROFILE_TAGS} tags")
    return text


def _flag(value: Any) -> bool:
    if not isinstance(value, bool):
        raise FieldValidationError(f"not a boolean: {value!r}")
    return value


def _language(value: Any) -> str:
    language = str(value).strip()
    if not LANGUAGE_PATTERN.match(language):
        raise FieldValidationError(f"unknown language code {language!r}")
    return language


# archive attribute -> (profile column, validator)
PROFILE_FIELDS: dict[str, tuple[str, Callable[[Any], Any]]] = {
    "first_name": ("first_name", _text(MAX_NAME_LENGTH)),
    "last_name": ("last_name", _text(MAX_NAME_LENGTH)),
    "full_name": ("full_name", _text(MAX_NAME_LENGTH * 2 + 1)),
    "gender": ("gender", _text(MAX_TEXT_LENGTH)),
    "bio": ("bio", _text(MAX_BIO_LENGTH)),
    "birthday": ("birthday", _birthday),
    "location": ("location", _text(MAX_TEXT_LENGTH)),
    "image_url": ("image_url", _image_url),
    "image_url_medium": ("image_url_medium", _image_url),
    "image_url_small": ("image_url_small", _image_url),
    "searchable": ("searchable", _flag),
    "public": ("public_details", _flag),
    "nsfw": ("nsfw", _flag),
    "tag_string": ("tag_string", _tag_string),
}

SCALAR_SETTINGS: dict[str, Callable[[Any], Any]] = {
    "language": _language,
    "strip_exif": _flag,
    "show_community_spotlight_in_stream": _flag,
    "auto_follow_back": _flag,
}


def validated_settings(archive_user: ArchiveUser) -> dict[str, Any]:
    """Scalar settings from the archive that pass validation; invalid ones are dropped."""
    settings: dict[str, Any] = {}
    for name, value in archive_user.present_settings().items():
        validator = SCALAR_SETTINGS.get(name)
        if validator is None:
            continue
        try:
            settings[name] = validator(value)
        except FieldValidationError as exc:
            logger.warning("Ignoring setting %s: %s", name, exc)
    return settings


class ProfileMerger:
    def __init__(self, session: Session, report: ImportReport) -> None:
        self.session = session
        self.report = report
        self.accounts = AccountRepository(session)

    def merge(self, user: User, profile_data: ProfileData) -> None:
        profile = self.accounts.ensure_profile(user)
        for name, value in profile_data.present_fields().items():
            column, validator = PROFILE_FIELDS[name]
            try:
                setattr(profile, column, validator(value))
            except FieldValidationError as exc:
                self.report.skip("profile_field", name, str(exc))
                continue
            self.report.count("profile_field")
        self.session.add(profile)
        self.session.flush()


class SettingsMerger:
    def __init__(self, session: Session, report: ImportReport) -> None:
        self.session = session
        self.report = report
        self.aspects = AspectRepository(session)

    def merge(self, user: User, archive_user: ArchiveUser) -> None:
        for group in archive_user.contact_groups:
            aspect, created = self.aspects.find_or_create(user, group.name, group.chat_enabled)
            if created:
                self.report.count("contact_group")
            elif group.chat_enabled is not None and aspect.chat_enabled != group.chat_enabled:
                aspect.chat_enabled = group.chat_enabled
                self.session.add(aspect)

        present = archive_user.present_settings()
        for name, validator in SCALAR_SETTINGS.items():
            if name not in present:
                continue
            try:
                setattr(user, name, validator(present[name]))
            except FieldValidationError as exc:
                self.report.skip("setting", name, str(exc))
                continue
            self.report.count("setting")

        aspect_name = archive_user.auto_follow_back_aspect
        if aspect_name is not None:
            if not aspect_name.strip():
                self.report.skip("setting", "auto_follow_back_aspect", "blank contact group name")
            else:
                aspect, created = self.aspects.find_or_create(user, aspect_name)
                if created:
                    self.report.count("contact_group")
                user.auto_follow_back_aspect_id = aspect.id
                self.report.count("setting")

        self.session.add(user)
        self.session.flush()


class SocialGraphMerger:
    """Creates the account's follow edges; safe to run repeatedly."""

    def __init__(self, session: Session, locator: EntityLocator, report: ImportReport) -> None:
        self.session = session
        self.locator = locator
        self.report = report
        self.edges = EdgeRepository(session)
        self.aspects = AspectRepository(session)

    def merge(self, user: User, archive_user: ArchiveUser) -> None:
        self.merge_tags(user, archive_user.followed_tags)
        self.merge_subscriptions(user, archive_user.post_subscriptions)
        self.merge_contacts(user, archive_user)
        self.merge_blocks(user, archive_user.blocks)

    def merge_tags(self, user: User, tag_names: tuple[str, ...]) -> None:
        for name in tag_names:
            try:
                tag = self.locator.locate_tag(name)
            except ValueError as exc:
                self.report.skip("tag", name, str(exc))
                continue
            if self.edges.add_tag_following(user, tag):
                self.report.count("tag_following")

    def merge_subscriptions(self, user: User, guids: tuple[str, ...]) -> None:
        self.locator.prefetch_contents(guids)
        for guid in guids:
            located = self.locator.locate_content(guid)
            if isinstance(located, Unresolvable):
                self.report.skip("subscription", guid, located.reason)
                continue
            if self.edges.add_participation(user, located.entity):
                self.report.count("participation")

    def merge_contacts(self, user: User, archive_user: ArchiveUser) -> None:
        self.locator.prefetch_people(contact.account_id for contact in archive_user.contacts)
        for contact_data in archive_user.contacts:
            located = self.locator.locate_person(contact_data.account_id)
            if isinstance(located, Unresolvable):
                self.report.skip("contact", contact_data.account_id, located.reason)
                continue
            contact, created = self.edges.add_contact(
                user,
                located.entity,
                sharing=contact_data.sharing,
                receiving=contact_data.receiving,
            )
            if created:
                self.report.count("contact")
            for group_name in contact_data.contact_groups_membership:
                aspect = self.aspects.find_by_name(user, group_name)
                if aspect is None:
                    self.report.skip(
                        "aspect_membership",
                        f"{contact_data.account_id}:{group_name}",
                        "contact group does not exist on the account",
                    )
                    continue
                if self.edges.add_aspect_membership(aspect, contact):
                    self.report.count("aspect_membership")

    def merge_blocks(self, user: User, handles: tuple[str, ...]) -> None:
        self.locator.prefetch_people(handles)
        for handle in handles:
            located = self.locator.locate_person(handle)
            if isinstance(located, Unresolvable):
                self.report.skip("block", handle, located.reason)
                continue
            if self.edges.add_block(user, located.entity):
                self.report.count("block")
