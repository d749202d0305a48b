import unittest
from datetime import datetime, timedelta

from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError

from pocketbook.auth import (
    AuthError,
    bearer_token,
    create_session,
    create_user,
    find_user,
    hash_password,
    resolve_session,
    verify_password,
)
from pocketbook.store import metadata, sessions


class PasswordTests(unittest.TestCase):
    def test_hash_round_trip(self) -> None:
        hashed = hash_password("secret1")

        self.assertNotEqual(hashed, "secret1")
        self.assertTrue(verify_password("secret1", hashed))
        self.assertFalse(verify_password("secret2", hashed))

    def test_overlong_password_never_verifies(self) -> None:
        hashed = hash_password("secret1")

        self.assertFalse(verify_password("x" * 100, hashed))


class BearerTokenTests(unittest.TestCase):
    def test_extracts_token(self) -> None:
        self.assertEqual(bearer_token("Bearer abc123 "), "abc123")

    def test_rejects_other_schemes(self) -> None:
        self.assertIsNone(bearer_token(None))
        self.assertIsNone(bearer_token("Basic abc123"))
        self.assertIsNone(bearer_token("Bearer   "))


class SessionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine("sqlite://")
        metadata.create_all(self.engine)

    def test_resolves_live_session(self) -> None:
        now = datetime(2024, 3, 15, 12, 0)
        with self.engine.begin() as conn:
            user_id = create_user(conn, "Alice", "secret1")
            issued = create_session(conn, user_id, now=now)
            user = resolve_session(conn, issued.token, now=now + timedelta(days=1))

        self.assertEqual(user.id, user_id)
        self.assertEqual(user.username, "Alice")
        self.assertEqual(issued.expires_at, now + timedelta(days=14))

    def test_find_user_ignores_case(self) -> None:
        with self.engine.begin() as conn:
            create_user(conn, "Alice", "secret1")
            found = find_user(conn, "aLiCe")

        self.assertEqual(found["username"], "Alice")

    def test_usernames_are_unique_regardless_of_case(self) -> None:
        with self.engine.begin() as conn:
            create_user(conn, "Alice", "secret1")

        with self.assertRaises(IntegrityError):
            with self.engine.begin() as conn:
                create_user(conn, "alice", "secret2")

    def test_expired_session_is_revoked(self) -> None:
        now = datetime(2024, 3, 15, 12, 0)
        with self.engine.begin() as conn:
            user_id = create_user(conn, "alice", "secret1")
            issued = create_session(conn, user_id, ttl=timedelta(hours=1), now=now)
            with self.assertRaises(AuthError):
                resolve_session(conn, issued.token, now=now + timedelta(hours=2))
            remaining = conn.execute(sessions.select()).all()

        self.assertEqual(remaining, [])

    def test_unknown_token_is_rejected(self) -> None:
        with self.engine.begin() as conn:
            with self.assertRaises(AuthError):
                resolve_session(conn, "missing")
            with self.assertRaises(AuthError):
                resolve_session(conn, None)


if __name__ == "__main__":
    unittest.main()
