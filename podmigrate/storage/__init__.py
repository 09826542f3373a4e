from .db import get_default_db_url, get_engine, get_session, init_db
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

__all__ = [
    "Aspect",
    "AspectMembership",
    "Block",
    "Contact",
    "Participation",
    "Person",
    "Post",
    "Profile",
    "Tag",
    "TagFollowing",
    "User",
    "get_default_db_url",
    "get_engine",
    "get_session",
    "init_db",
]
