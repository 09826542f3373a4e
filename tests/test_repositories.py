import unittest

from sqlmodel import Session, select

from podmigrate.federation import Identity
from podmigrate.storage.db import get_engine, init_db
from podmigrate.storage.models import (
    Aspect,
    Participation,
    Person,
    Post,
    Profile,
    TagFollowing,
    User,
)
from podmigrate.storage.repositories import (
    AccountRepository,
    AspectRepository,
    EdgeRepository,
    PersonRepository,
    TagRepository,
    normalize_tag_name,
)


class RepositoryTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = get_engine("sqlite:///:memory:")
        init_db(self.engine)
        self.session = Session(self.engine)
        self.accounts = AccountRepository(self.session)

    def tearDown(self) -> None:
        self.session.close()
        self.engine.dispose()

    def _user(self) -> User:
        user, _ = self.accounts.find_or_create("alice@example.com", "alice", "secret1")
        return user


class TestAccountRepository(RepositoryTestCase):
    def test_find_or_create_creates_account_with_profile(self) -> None:
        user, created = self.accounts.find_or_create(
            "Alice@Example.com", "Alice", "secret1", language="de", getting_started=False
        )

        self.assertTrue(created)
        self.assertEqual(user.username, "alice")
        self.assertEqual(user.email, "alice@example.com")
        self.assertEqual(user.language, "de")
        self.assertFalse(user.getting_started)
        self.assertTrue(user.password_hash.startswith("pbkdf2_sha256$"))
        self.assertNotIn("secret1", user.password_hash)
        self.assertIsNotNone(self.session.get(Profile, user.id))

    def test_find_or_create_reuses_existing_email(self) -> None:
        first = self._user()

        second, created = self.accounts.find_or_create("alice@example.com", "other", "secret2")

        self.assertFalse(created)
        self.assertEqual(first.id, second.id)
        self.assertEqual(len(self.session.exec(select(User)).all()), 1)

    def test_find_or_create_validates_input(self) -> None:
        self._user()
        for kwargs in (
            {"email": "bob@example.com", "username": "bad name", "password": "secret1"},
            {"email": "bob@example.com", "username": "alice", "password": "secret1"},
            {"email": "bob@example.com", "username": "bob", "password": "short"},
            {"email": "not-an-email", "username": "bob", "password": "secret1"},
        ):
            with self.subTest(kwargs=kwargs):
                with self.assertRaises(ValueError):
                    self.accounts.find_or_create(**kwargs)

    def test_unknown_settings_are_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self.accounts.find_or_create("bob@example.com", "bob", "secret1", theme="dark")


class TestTagRepository(RepositoryTestCase):
    def test_normalize_tag_name(self) -> None:
        self.assertEqual(normalize_tag_name("  #Python "), "python")
        with self.assertRaises(ValueError):
            normalize_tag_name(" # ")

    def test_find_or_create_is_idempotent(self) -> None:
        tags = TagRepository(self.session)

        first = tags.find_or_create_by_name("#Music")
        second = tags.find_or_create_by_name("music")

        self.assertEqual(first.id, second.id)
        self.assertEqual(tags.find_by_name("MUSIC").id, first.id)


class TestPersonRepository(RepositoryTestCase):
    def test_store_identity_upserts_by_handle(self) -> None:
        people = PersonRepository(self.session)
        identity = Identity(
            handle="bob@pod.example", host="pod.example", pod_url="https://pod.example/"
        )

        first = people.store_identity(identity)
        moved = Identity(
            handle="Bob@pod.example",
            host="pod.example",
            pod_url="https://pod.example/diaspora/",
            guid="abc123",
        )
        second = people.store_identity(moved)

        self.assertEqual(first.id, second.id)
        self.assertEqual(second.pod_url, "https://pod.example/diaspora/")
        self.assertEqual(second.guid, "abc123")
        self.assertEqual(len(self.session.exec(select(Person)).all()), 1)
        self.assertEqual(people.find_by_handle("BOB@pod.example").id, first.id)


class TestAspectRepository(RepositoryTestCase):
    def test_find_or_create_reports_creation(self) -> None:
        user = self._user()
        aspects = AspectRepository(self.session)

        first, created = aspects.find_or_create(user, " Family ", chat_enabled=True)
        second, created_again = aspects.find_or_create(user, "Family")

        self.assertTrue(created)
        self.assertFalse(created_again)
        self.assertEqual(first.id, second.id)
        self.assertTrue(second.chat_enabled)
        self.assertEqual(self.session.get(Aspect, first.id).name, "Family")

    def test_blank_name_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            AspectRepository(self.session).find_or_create(self._user(), "   ")


class TestEdgeRepository(RepositoryTestCase):
    def test_edges_are_created_once(self) -> None:
        user = self._user()
        edges = EdgeRepository(self.session)
        tag = TagRepository(self.session).find_or_create_by_name("linux")
        post = Post(guid="0123456789abcdef0123", text="hi")
        self.session.add(post)
        self.session.flush()
        person = PersonRepository(self.session).store_identity(
            Identity(handle="bob@pod.example", host="pod.example", pod_url="https://pod.example/")
        )
        aspect, _ = AspectRepository(self.session).find_or_create(user, "Friends")

        self.assertTrue(edges.add_tag_following(user, tag))
        self.assertFalse(edges.add_tag_following(user, tag))
        self.assertTrue(edges.add_participation(user, post))
        self.assertFalse(edges.add_participation(user, post))
        self.assertTrue(edges.add_block(user, person))
        self.assertFalse(edges.add_block(user, person))

        contact, created = edges.add_contact(user, person, sharing=True, receiving=False)
        same, created_again = edges.add_contact(user, person, sharing=False, receiving=True)
        self.assertTrue(created)
        self.assertFalse(created_again)
        self.assertEqual(contact.id, same.id)
        self.assertTrue(same.sharing)

        self.assertTrue(edges.add_aspect_membership(aspect, contact))
        self.assertFalse(edges.add_aspect_membership(aspect, contact))

        followings = self.session.exec(
            select(TagFollowing).where(TagFollowing.user_id == user.id)
        ).all()
        participations = self.session.exec(
            select(Participation).where(Participation.user_id == user.id)
        ).all()
        self.assertEqual([f.tag_id for f in followings], [tag.id])
        self.assertEqual([p.post_id for p in participations], [post.id])


class TestEngine(unittest.TestCase):
    def test_non_sqlite_urls_are_rejected(self) -> None:
        for db_url in ("postgresql://user@localhost/pod", "mysql+pymysql://user@localhost/pod"):
            with self.subTest(db_url=db_url):
                with self.assertRaisesRegex(ValueError, "Only SQLite"):
                    get_engine(db_url)

    def test_sqlite_file_url_is_accepted(self) -> None:
        engine = get_engine("sqlite:///pod.db")
        try:
            self.assertEqual(engine.dialect.name, "sqlite")
        finally:
            engine.dispose()
