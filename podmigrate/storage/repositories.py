from __future__ import annotations

import base64
import hashlib
import logging
import re
import secrets
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import Session, select

from .models import (
    Aspect,
    AspectMembership,
    Block,
    Contact,
    Participation,
    Person,
    Post,
    Profile,
    Tag,
    TagFollowing,
    User,
)

logger = logging.getLogger(__name__)

USERNAME_PATTERN = re.compile(r"^[a-z0-9_]{1,32}$")
MIN_PASSWORD_LENGTH = 6
PASSWORD_ITERATIONS = 120_000
USER_SETTING_FIELDS = {
    "language",
    "strip_exif",
    "show_community_spotlight_in_stream",
    "auto_follow_back",
}


def hash_password(password: str, *, iterations: int = PASSWORD_ITERATIONS) -> str:
    salt = secrets.token_bytes(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)
    return "pbkdf2_sha256${}${}${}".format(
        iterations,
        base64.b64encode(salt).decode("ascii"),
        base64.b64encode(digest).decode("ascii"),
    )


def normalize_tag_name(name: str) -> str:
    normalized = name.strip().lstrip("#").strip().lower()
    if not normalized:
        raise ValueError(f"Invalid tag name: {name!r}")
    return normalized


def _insert_ignore(
    session: Session,
    model: type[Any],
    values: dict[str, Any],
    conflict_columns: Sequence[str],
) -> bool:
    """Insert a row unless it collides with a unique constraint; True when inserted."""
    session.flush()
    statement = (
        sqlite_insert(model)
        .values(**values)
        .on_conflict_do_nothing(index_elements=list(conflict_columns))
    )
    result = session.connection().execute(statement)
    return result.rowcount == 1


class AccountRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def find_by_email(self, email: str) -> Optional[User]:
        return self.session.exec(
            select(User).where(User.email == email.strip().lower()).limit(1)
        ).first()

    def find_by_username(self, username: str) -> Optional[User]:
        return self.session.exec(
            select(User).where(User.username == username.strip().lower()).limit(1)
        ).first()

    def find_or_create(
        self,
        email: str,
        username: str,
        password: str,
        **settings: Any,
    ) -> tuple[User, bool]:
        """Return the account registered with ``email``, creating it (and its profile) if absent."""
        if not email or "@" not in email:
            raise ValueError(f"Invalid email address: {email!r}")
        existing = self.find_by_email(email)
        if existing is not None:
            logger.info("Reusing existing account %s for %s", existing.username, email)
            return existing, False

        normalized_username = username.strip().lower()
        if not USERNAME_PATTERN.match(normalized_username):
            raise ValueError(f"Invalid username: {username!r}")
        if self.find_by_username(normalized_username) is not None:
            raise ValueError(f"Username {normalized_username!r} is already taken")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValueError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"
            )

        unknown = set(settings) - USER_SETTING_FIELDS - {"getting_started"}
        if unknown:
            raise ValueError(f"Unknown account settings: {', '.join(sorted(unknown))}")

        user = User(
            username=normalized_username,
            email=email.strip().lower(),
            password_hash=hash_password(password),
            **settings,
        )
        self.session.add(user)
        self.session.flush()
        self.session.add(Profile(user_id=user.id))
        self.session.flush()
        logger.info("Created account %s", normalized_username)
        return user, True

    def ensure_profile(self, user: User) -> Profile:
        profile = self.session.get(Profile, user.id)
        if profile is None:
            profile = Profile(user_id=user.id)
            self.session.add(profile)
            self.session.flush()
        return profile


class TagRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def find_by_name(self, name: str) -> Optional[Tag]:
        return self.session.exec(
            select(Tag).where(Tag.name == normalize_tag_name(name)).limit(1)
        ).first()

    def find_or_create_by_name(self, name: str) -> Tag:
        normalized = normalize_tag_name(name)
        _insert_ignore(self.session, Tag, {"name": normalized}, ["name"])
        tag = self.session.exec(select(Tag).where(Tag.name == normalized).limit(1)).one()
        return tag


class PersonRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def find_by_handle(self, handle: str) -> Optional[Person]:
        return self.session.exec(
            select(Person).where(Person.handle == handle.strip().lower()).limit(1)
        ).first()

    def store_identity(self, identity: Any) -> Person:
        """Insert or refresh the local record of a resolved remote identity."""
        handle = identity.handle.lower()
        values = {
            "handle": handle,
            "guid": identity.guid,
            "host": identity.host,
            "pod_url": identity.pod_url,
            "profile_url": identity.profile_url,
            "links": [dict(link) for link in identity.links] or None,
            "fetched_at": datetime.now(timezone.utc),
        }
        self.session.flush()
        statement = sqlite_insert(Person).values(**values)
        statement = statement.on_conflict_do_update(
            index_elements=["handle"],
            set_={
                key: statement.excluded[key]
                for key in ("guid", "host", "pod_url", "profile_url", "links", "fetched_at")
            },
        )
        self.session.connection().execute(statement)
        person = self.session.exec(select(Person).where(Person.handle == handle).limit(1)).one()
        self.session.refresh(person)
        return person


class ContentRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def find_by_guid(self, guid: str) -> Optional[Post]:
        return self.session.exec(select(Post).where(Post.guid == guid).limit(1)).first()

    def store_remote_post(self, remote_post: Any, author: Person) -> Post:
        _insert_ignore(
            self.session,
            Post,
            {
                "guid": remote_post.guid,
                "author_id": author.id,
                "text": remote_post.text,
                "public": remote_post.public,
                "created_at": remote_post.created_at or datetime.now(timezone.utc),
            },
            ["guid"],
        )
        return self.session.exec(select(Post).where(Post.guid == remote_post.guid).limit(1)).one()


class AspectRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def find_by_name(self, user: User, name: str) -> Optional[Aspect]:
        return self.session.exec(
            select(Aspect).where(Aspect.user_id == user.id, Aspect.name == name).limit(1)
        ).first()

    def find_or_create(
        self, user: User, name: str, chat_enabled: Optional[bool] = None
    ) -> tuple[Aspect, bool]:
        name = name.strip()
        if not name:
            raise ValueError("Contact group name must not be blank")
        created = _insert_ignore(
            self.session,
            Aspect,
            {"user_id": user.id, "name": name, "chat_enabled": bool(chat_enabled)},
            ["user_id", "name"],
        )
        aspect = self.find_by_name(user, name)
        if aspect is None:
            raise RuntimeError(f"Contact group {name!r} vanished after insert")
        return aspect, created


class EdgeRepository:
    """Relationship rows between an account and what it follows; creation is insert-if-absent."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def add_tag_following(self, user: User, tag: Tag) -> bool:
        return _insert_ignore(
            self.session,
            TagFollowing,
            {"user_id": user.id, "tag_id": tag.id},
            ["user_id", "tag_id"],
        )

    def add_participation(self, user: User, post: Post) -> bool:
        return _insert_ignore(
            self.session,
            Participation,
            {"user_id": user.id, "post_id": post.id},
            ["user_id", "post_id"],
        )

    def add_contact(
        self, user: User, person: Person, *, sharing: bool, receiving: bool
    ) -> tuple[Contact, bool]:
        created = _insert_ignore(
            self.session,
            Contact,
            {
                "user_id": user.id,
                "person_id": person.id,
                "sharing": sharing,
                "receiving": receiving,
            },
            ["user_id", "person_id"],
        )
        contact = self.session.exec(
            select(Contact)
            .where(Contact.user_id == user.id, Contact.person_id == person.id)
            .limit(1)
        ).one()
        return contact, created

    def add_aspect_membership(self, aspect: Aspect, contact: Contact) -> bool:
        return _insert_ignore(
            self.session,
            AspectMembership,
            {"aspect_id": aspect.id, "contact_id": contact.id},
            ["aspect_id", "contact_id"],
        )

    def add_block(self, user: User, person: Person) -> bool:
        return _insert_ignore(
            self.session,
            Block,
            {"user_id": user.id, "person_id": person.id},
            ["user_id", "person_id"],
        )
