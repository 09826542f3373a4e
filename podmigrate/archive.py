"""Typed view over an exported account archive.

The export is a loosely shaped JSON object. Everything below ``user`` except
``profile.entity_data`` is optional; missing or wrongly typed values are read as
absent so that a merge never has to probe raw dictionaries.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Optional

import requests

logger = logging.getLogger(__name__)

HANDLE_PATTERN = re.compile(
    r"^(?P<local>[a-z0-9_.\-]+)@(?P<host>[a-z0-9_\-]+(?:\.[a-z0-9_\-]+)*(?::\d+)?)$"
)


class MalformedArchive(ValueError):
    """Raised when the archive lacks the structure every import depends on."""


@dataclass(frozen=True)
class RemoteAuthorHandle:
    local_id: str
    host: str

    def __str__(self) -> str:
        return f"{self.local_id}@{self.host}"


def parse_handle(value: Any) -> Optional[RemoteAuthorHandle]:
    if not isinstance(value, str):
        return None
    match = HANDLE_PATTERN.match(value.strip().lower())
    if match is None:
        return None
    return RemoteAuthorHandle(local_id=match.group("local"), host=match.group("host"))


@dataclass(frozen=True)
class ProfileData:
    author: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    full_name: Optional[str] = None
    gender: Optional[str] = None
    bio: Optional[str] = None
    birthday: Optional[str] = None
    location: Optional[str] = None
    image_url: Optional[str] = None
    image_url_medium: Optional[str] = None
    image_url_small: Optional[str] = None
    searchable: Optional[bool] = None
    public: Optional[bool] = None
    nsfw: Optional[bool] = None
    tag_string: Optional[str] = None

    def present_fields(self) -> dict[str, Any]:
        """Profile attributes carried by the archive, author excluded."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name != "author" and getattr(self, f.name) is not None
        }


@dataclass(frozen=True)
class ContactGroupData:
    name: str
    chat_enabled: Optional[bool] = None


@dataclass(frozen=True)
class ContactData:
    account_id: str
    sharing: bool = False
    receiving: bool = False
    contact_groups_membership: tuple[str, ...] = ()


SETTING_FIELDS = (
    "language",
    "strip_exif",
    "show_community_spotlight_in_stream",
    "auto_follow_back",
    "auto_follow_back_aspect",
)


@dataclass(frozen=True)
class ArchiveUser:
    profile: ProfileData
    email: Optional[str] = None
    language: Optional[str] = None
    strip_exif: Optional[bool] = None
    show_community_spotlight_in_stream: Optional[bool] = None
    auto_follow_back: Optional[bool] = None
    auto_follow_back_aspect: Optional[str] = None
    contact_groups: tuple[ContactGroupData, ...] = ()
    contacts: tuple[ContactData, ...] = ()
    blocks: tuple[str, ...] = ()
    followed_tags: tuple[str, ...] = ()
    post_subscriptions: tuple[str, ...] = ()

    @property
    def author(self) -> Optional[RemoteAuthorHandle]:
        return parse_handle(self.profile.author)

    def present_settings(self) -> dict[str, Any]:
        return {
            name: getattr(self, name)
            for name in SETTING_FIELDS
            if getattr(self, name) is not None
        }


@dataclass(frozen=True)
class Archive:
    user: ArchiveUser


def _optional_str(section: dict[str, Any], key: str, where: str) -> Optional[str]:
    value = section.get(key)
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    logger.warning("Ignoring %s.%s: expected a string, got %s", where, key, type(value).__name__)
    return None


def _optional_bool(section: dict[str, Any], key: str, where: str) -> Optional[bool]:
    value = section.get(key)
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    logger.warning("Ignoring %s.%s: expected a boolean, got %s", where, key, type(value).__name__)
    return None


def _string_list(section: dict[str, Any], key: str, where: str) -> tuple[str, ...]:
    value = section.get(key)
    if value is None:
        return ()
    if not isinstance(value, list):
        logger.warning("Ignoring %s.%s: expected a list, got %s", where, key, type(value).__name__)
        return ()
    items: list[str] = []
    for item in value:
        if isinstance(item, str) and item.strip():
            items.append(item.strip())
        else:
            logger.warning("Skipping invalid entry in %s.%s: %r", where, key, item)
    return tuple(items)


def _parse_contact_groups(user: dict[str, Any]) -> tuple[ContactGroupData, ...]:
    raw = user.get("contact_groups")
    if raw is None:
        return ()
    if not isinstance(raw, list):
        logger.warning("Ignoring user.contact_groups: expected a list")
        return ()
    groups: list[ContactGroupData] = []
    for item in raw:
        if not isinstance(item, dict):
            logger.warning("Skipping invalid contact group: %r", item)
            continue
        name = _optional_str(item, "name", "contact_group")
        if name is None or not name.strip():
            logger.warning("Skipping contact group without a name: %r", item)
            continue
        groups.append(
            ContactGroupData(
                name=name.strip(),
                chat_enabled=_optional_bool(item, "chat_enabled", "contact_group"),
            )
        )
    return tuple(groups)


def _parse_contacts(user: dict[str, Any]) -> tuple[ContactData, ...]:
    raw = user.get("contacts")
    if raw is None:
        return ()
    if not isinstance(raw, list):
        logger.warning("Ignoring user.contacts: expected a list")
        return ()
    contacts: list[ContactData] = []
    for item in raw:
        if not isinstance(item, dict):
            logger.warning("Skipping invalid contact: %r", item)
            continue
        account_id = _optional_str(item, "account_id", "contact")
        if not account_id:
            logger.warning("Skipping contact without account_id: %r", item)
            continue
        receiving = _optional_bool(item, "receiving", "contact")
        if receiving is None:
            receiving = _optional_bool(item, "following", "contact")
        contacts.append(
            ContactData(
                account_id=account_id.strip(),
                sharing=bool(_optional_bool(item, "sharing", "contact")),
                receiving=bool(receiving),
                contact_groups_membership=_string_list(
                    item, "contact_groups_membership", "contact"
                ),
            )
        )
    return tuple(contacts)


def _parse_blocks(user: dict[str, Any]) -> tuple[str, ...]:
    raw = user.get("blocks")
    if raw is None:
        return ()
    if not isinstance(raw, list):
        logger.warning("Ignoring user.blocks: expected a list")
        return ()
    handles: list[str] = []
    for item in raw:
        # Older exports wrap the handle in an object.
        if isinstance(item, dict):
            item = item.get("account_id") or item.get("person_diaspora_id")
        if isinstance(item, str) and item.strip():
            handles.append(item.strip())
        else:
            logger.warning("Skipping invalid block entry: %r", item)
    return tuple(handles)


def _parse_profile(user: dict[str, Any]) -> ProfileData:
    profile = user.get("profile")
    if not isinstance(profile, dict):
        raise MalformedArchive("Archive user section has no profile object.")
    entity_data = profile.get("entity_data")
    if not isinstance(entity_data, dict):
        raise MalformedArchive("Archive profile has no entity_data object.")

    where = "profile.entity_data"
    return ProfileData(
        author=_optional_str(entity_data, "author", where),
        first_name=_optional_str(entity_data, "first_name", where),
        last_name=_optional_str(entity_data, "last_name", where),
        full_name=_optional_str(entity_data, "full_name", where),
        gender=_optional_str(entity_data, "gender", where),
        bio=_optional_str(entity_data, "bio", where),
        birthday=_optional_str(entity_data, "birthday", where),
        location=_optional_str(entity_data, "location", where),
        image_url=_optional_str(entity_data, "image_url", where),
        image_url_medium=_optional_str(entity_data, "image_url_medium", where),
        image_url_small=_optional_str(entity_data, "image_url_small", where),
        searchable=_optional_bool(entity_data, "searchable", where),
        public=_optional_bool(entity_data, "public", where),
        nsfw=_optional_bool(entity_data, "nsfw", where),
        tag_string=_optional_str(entity_data, "tag_string", where),
    )


def parse_archive(data: Any) -> Archive:
    if not isinstance(data, dict):
        raise MalformedArchive("Archive must be a JSON object.")
    user = data.get("user")
    if not isinstance(user, dict):
        raise MalformedArchive("Archive has no user section.")

    where = "user"
    archive_user = ArchiveUser(
        profile=_parse_profile(user),
        email=_optional_str(user, "email", where),
        language=_optional_str(user, "language", where),
        strip_exif=_optional_bool(user, "strip_exif", where),
        show_community_spotlight_in_stream=_optional_bool(
            user, "show_community_spotlight_in_stream", where
        ),
        auto_follow_back=_optional_bool(user, "auto_follow_back", where),
        auto_follow_back_aspect=_optional_str(user, "auto_follow_back_aspect", where),
        contact_groups=_parse_contact_groups(user),
        contacts=_parse_contacts(user),
        blocks=_parse_blocks(user),
        followed_tags=_string_list(user, "followed_tags", where),
        post_subscriptions=_string_list(user, "post_subscriptions", where),
    )
    return Archive(user=archive_user)


def load_archive(path: str | Path) -> dict[str, Any]:
    path = Path(path)
    with path.open("r", encoding="utf-8") as handle:
        try:
            data = json.load(handle)
        except json.JSONDecodeError as exc:
            raise MalformedArchive(f"Archive {path} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise MalformedArchive(f"Archive {path} does not contain a JSON object.")
    return data


def download_archive(url: str, *, timeout: float = 60) -> dict[str, Any]:
    response = requests.get(url, timeout=timeout)
    response.raise_for_status()
    try:
        data = response.json()
    except ValueError as exc:
        raise MalformedArchive(f"Archive at {url} is not valid JSON.") from exc
    if not isinstance(data, dict):
        raise MalformedArchive(f"Archive at {url} does not contain a JSON object.")
    return data
