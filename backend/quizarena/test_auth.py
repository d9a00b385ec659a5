from __future__ import annotations

from datetime import timedelta
from unittest import TestCase

import jwt

from .auth import AuthError, AuthService
from .testing import make_settings


class AuthServiceTests(TestCase):
    def setUp(self) -> None:
        self.auth = AuthService(make_settings())

    def test_issued_token_identifies_user(self):
        token = self.auth.issue_token("u1", "Marie", role="admin", avatar="marie.png")
        user = self.auth.verify_user(token)

        self.assertEqual(user.user_id, "u1")
        self.assertEqual(user.username, "Marie")
        self.assertEqual(user.avatar, "marie.png")
        self.assertTrue(self.auth.has_admin_privilege(user))
        self.assertTrue(self.auth.can_create_sessions(user))

    def test_players_cannot_administer(self):
        user = self.auth.verify_user(self.auth.issue_token("u2", "Pierre"))
        self.assertEqual(user.role, "player")
        self.assertFalse(self.auth.has_admin_privilege(user))
        self.assertFalse(self.auth.can_create_sessions(user))

    def test_missing_token(self):
        for token in (None, ""):
            with self.assertRaises(AuthError):
                self.auth.verify_user(token)

    def test_expired_token(self):
        token = self.auth.issue_token("u1", "Marie", expires_in=timedelta(seconds=-1))
        with self.assertRaises(AuthError):
            self.auth.verify_user(token)

    def test_token_signed_with_other_secret(self):
        token = AuthService(make_settings(JWT_SECRET="someone-else")).issue_token("u1", "Marie")
        with self.assertRaises(AuthError):
            self.auth.verify_user(token)

    def test_token_without_subject(self):
        token = jwt.encode({"name": "ghost"}, "test-secret", algorithm="HS256")
        with self.assertRaises(AuthError):
            self.auth.verify_user(token)

    def test_unknown_role_falls_back_to_player(self):
        token = jwt.encode({"sub": "u3", "role": "superuser"}, "test-secret", algorithm="HS256")
        user = self.auth.verify_user(token)
        self.assertEqual(user.role, "player")
        self.assertEqual(user.username, "u3")
