from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import Column, JSON, UniqueConstraint
from sqlmodel import Field, Relationship, SQLModel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(SQLModel, table=True):
    __tablename__ = "user"

    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, unique=True)
    email: str = Field(index=True, unique=True)
    password_hash: str
    getting_started: bool = True
    language: str = "en"
    strip_exif: bool = True
    show_community_spotlight_in_stream: bool = True
    auto_follow_back: bool = False
    # Points at an Aspect row of this user; kept without a foreign key so the
    # user/aspect tables do not reference each other.
    auto_follow_back_aspect_id: Optional[int] = None
    created_at: datetime = Field(default_factory=_utcnow)

    profile: Optional["Profile"] = Relationship(
        back_populates="user", sa_relationship_kwargs={"uselist": False}
    )
    aspects: list["Aspect"] = Relationship(back_populates="user")
    tag_followings: list["TagFollowing"] = Relationship(back_populates="user")
    participations: list["Participation"] = Relationship(back_populates="user")
    contacts: list["Contact"] = Relationship(back_populates="user")
    blocks: list["Block"] = Relationship(back_populates="user")


class Profile(SQLModel, table=True):
    __tablename__ = "profile"

    user_id: int = Field(primary_key=True, foreign_key="user.id")
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    full_name: Optional[str] = None
    gender: Optional[str] = None
    bio: Optional[str] = None
    birthday: Optional[date] = None
    location: Optional[str] = None
    image_url: Optional[str] = None
    image_url_medium: Optional[str] = None
    image_url_small: Optional[str] = None
    searchable: bool = True
    public_details: bool = False
    nsfw: bool = False
    tag_string: Optional[str] = None

    user: Optional[User] = Relationship(back_populates="profile")


class Aspect(SQLModel, table=True):
    __tablename__ = "aspect"
    __table_args__ = (UniqueConstraint("user_id", "name", name="uq_aspect_user_id_name"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    name: str
    chat_enabled: bool = False

    user: Optional[User] = Relationship(back_populates="aspects")


class Tag(SQLModel, table=True):
    __tablename__ = "tag"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True)


class TagFollowing(SQLModel, table=True):
    __tablename__ = "tag_following"
    __table_args__ = (
        UniqueConstraint("user_id", "tag_id", name="uq_tag_following_user_id_tag_id"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    tag_id: int = Field(foreign_key="tag.id", index=True)

    user: Optional[User] = Relationship(back_populates="tag_followings")
    tag: Optional[Tag] = Relationship()


class Person(SQLModel, table=True):
    __tablename__ = "person"

    id: Optional[int] = Field(default=None, primary_key=True)
    handle: str = Field(index=True, unique=True)
    guid: Optional[str] = Field(default=None, index=True)
    host: str
    pod_url: str
    profile_url: Optional[str] = None
    links: Optional[list[dict[str, str]]] = Field(default=None, sa_column=Column(JSON))
    fetched_at: datetime = Field(default_factory=_utcnow)


class Post(SQLModel, table=True):
    __tablename__ = "post"

    id: Optional[int] = Field(default=None, primary_key=True)
    guid: str = Field(index=True, unique=True)
    author_id: Optional[int] = Field(default=None, foreign_key="person.id", index=True)
    text: str = ""
    public: bool = True
    created_at: datetime = Field(default_factory=_utcnow)

    author: Optional[Person] = Relationship()


class Participation(SQLModel, table=True):
    __tablename__ = "participation"
    __table_args__ = (
        UniqueConstraint("user_id", "post_id", name="uq_participation_user_id_post_id"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    post_id: int = Field(foreign_key="post.id", index=True)

    user: Optional[User] = Relationship(back_populates="participations")
    target: Optional[Post] = Relationship()


class Contact(SQLModel, table=True):
    __tablename__ = "contact"
    __table_args__ = (
        UniqueConstraint("user_id", "person_id", name="uq_contact_user_id_person_id"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    person_id: int = Field(foreign_key="person.id", index=True)
    sharing: bool = False
    receiving: bool = False

    user: Optional[User] = Relationship(back_populates="contacts")
    person: Optional[Person] = Relationship()


class AspectMembership(SQLModel, table=True):
    __tablename__ = "aspect_membership"
    __table_args__ = (
        UniqueConstraint(
            "aspect_id",
            "contact_id",
            name="uq_aspect_membership_aspect_id_contact_id",
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    aspect_id: int = Field(foreign_key="aspect.id", index=True)
    contact_id: int = Field(foreign_key="contact.id", index=True)


class Block(SQLModel, table=True):
    __tablename__ = "block"
    __table_args__ = (
        UniqueConstraint("user_id", "person_id", name="uq_block_user_id_person_id"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    person_id: int = Field(foreign_key="person.id", index=True)

    user: Optional[User] = Relationship(back_populates="blocks")
    person: Optional[Person] = Relationship()
