import os
import tempfile
import unittest
from unittest.mock import MagicMock, patch

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from userstore.app import create_app
from userstore.config import Settings
from userstore.db import (
    InMemoryUserRepository,
    PoolDrainError,
    RollbackError,
    SqlUserRepository,
)
from userstore.dependencies import AppContext, build_context
from userstore.sessions import (
    InMemorySessionStore,
    SessionCookieSigner,
    SessionStoreError,
)

PROTECTED_ROUTES = [
    ("get", "/api/users/info"),
    ("post", "/api/users/logout"),
    ("get", "/api/users/storage"),
    ("post", "/api/users/storage"),
]


def _settings(tmpdir: str, **overrides) -> Settings:
    values = dict(
        use_in_memory_backends=True,
        keepalive_enabled=False,
        session_secret_file=os.path.join(tmpdir, "keys", "session_secret"),
    )
    values.update(overrides)
    return Settings(**values)


class BackendApiTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.app = create_app(_settings(self.tmpdir.name))
        self.context: AppContext = self.app.state.context
        self.client = TestClient(self.app)

    def tearDown(self):
        self.client.close()
        self.tmpdir.cleanup()

    def _register_and_login(self, email="a@b.com", username="a", password="pw"):
        response = self.client.post(
            "/api/users/add",
            json={"email": email, "username": username, "password": password},
        )
        self.assertEqual(response.status_code, 201)
        response = self.client.post(
            "/api/users/login", json={"email": email, "password": password}
        )
        self.assertEqual(response.status_code, 200)

    def _session_id(self) -> str:
        return self.context.signer.unsign(self.client.cookies.get("sid"))

    def test_full_session_flow(self):
        response = self.client.post(
            "/api/users/add",
            json={"email": "a@b.com", "username": "a", "password": "pw"},
        )
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["message"], "User added successfully!")

        response = self.client.post(
            "/api/users/login", json={"email": "a@b.com", "password": "pw"}
        )
        self.assertEqual(response.status_code, 200)
        set_cookie = response.headers["set-cookie"]
        self.assertIn("sid=", set_cookie)
        self.assertIn("HttpOnly", set_cookie)
        self.assertIn("Path=/api", set_cookie)

        info = self.client.get("/api/users/info")
        self.assertEqual(info.status_code, 200)
        self.assertEqual(
            info.json(), {"userId": 1, "username": "a", "email": "a@b.com"}
        )

        response = self.client.post("/api/users/storage", json={"x": 1})
        self.assertEqual(response.status_code, 200)

        response = self.client.get("/api/users/storage")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"storage": {"x": 1}})

        response = self.client.post("/api/users/logout")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.context.sessions.records, {})

        self.assertEqual(self.client.get("/api/users/info").status_code, 401)

    def test_login_unknown_email(self):
        response = self.client.post(
            "/api/users/login", json={"email": "nobody@b.com", "password": "pw"}
        )
        self.assertEqual(response.status_code, 401)
        self.assertNotIn("set-cookie", response.headers)
        self.assertEqual(self.context.sessions.records, {})

    def test_login_wrong_password_matches_unknown_email(self):
        self.client.post(
            "/api/users/add",
            json={"email": "a@b.com", "username": "a", "password": "pw"},
        )
        wrong = self.client.post(
            "/api/users/login", json={"email": "a@b.com", "password": "nope"}
        )
        unknown = self.client.post(
            "/api/users/login", json={"email": "x@b.com", "password": "nope"}
        )
        self.assertEqual(wrong.status_code, 401)
        self.assertEqual(wrong.json(), unknown.json())
        self.assertEqual(self.context.sessions.records, {})

    def test_login_session_holds_user(self):
        self._register_and_login()
        data = self.context.sessions.get(self._session_id())
        self.assertEqual(data.user_id, 1)
        self.assertEqual(data.username, "a")
        self.assertEqual(data.email, "a@b.com")
        self.assertEqual(data.storage, {})

    def test_relogin_replaces_previous_session(self):
        self._register_and_login()
        first = self._session_id()
        response = self.client.post(
            "/api/users/login", json={"email": "a@b.com", "password": "pw"}
        )
        self.assertEqual(response.status_code, 200)
        self.assertIsNone(self.context.sessions.get(first))
        self.assertEqual(len(self.context.sessions.records), 1)

    def test_protected_routes_require_session(self):
        self.client.post(
            "/api/users/add",
            json={"email": "a@b.com", "username": "a", "password": "pw"},
        )
        for method, path in PROTECTED_ROUTES:
            kwargs = {"json": {"x": 1}} if method == "post" else {}
            response = getattr(self.client, method)(path, **kwargs)
            self.assertEqual(response.status_code, 401, path)
            self.assertEqual(response.json()["detail"], "Authentication required.")
        self.assertEqual(self.context.repository.get_json_storage(1), {})

    def test_tampered_cookie_is_rejected(self):
        self._register_and_login()
        session_id = self._session_id()
        with TestClient(self.app) as fresh:
            response = fresh.get(
                "/api/users/info", headers={"Cookie": f"sid={session_id}"}
            )
        self.assertEqual(response.status_code, 401)

    def test_cookie_for_destroyed_session_is_rejected(self):
        self._register_and_login()
        self.context.sessions.destroy(self._session_id())
        self.assertEqual(self.client.get("/api/users/info").status_code, 401)

    def test_storage_merge_patch(self):
        self._register_and_login()
        self.client.post("/api/users/storage", json={"a": 1})
        self.client.post("/api/users/storage", json={"b": 2})
        self.assertEqual(
            self.client.get("/api/users/storage").json(), {"storage": {"a": 1, "b": 2}}
        )
        self.client.post("/api/users/storage", json={"a": None})
        self.assertEqual(
            self.client.get("/api/users/storage").json(), {"storage": {"b": 2}}
        )

    def test_storage_write_refreshes_session_cache(self):
        self._register_and_login()
        self.client.post("/api/users/storage", json={"a": 1})
        self.client.post("/api/users/storage", json={"b": 2})
        data = self.context.sessions.get(self._session_id())
        self.assertEqual(data.storage, {"a": 1, "b": 2})

    def test_storage_rejects_non_object(self):
        self._register_and_login()
        for body in ([1, 2], "text", 5):
            response = self.client.post("/api/users/storage", json=body)
            self.assertEqual(response.status_code, 400)
        for raw in ("null", ""):
            response = self.client.post(
                "/api/users/storage",
                content=raw,
                headers={"Content-Type": "application/json"},
            )
            self.assertEqual(response.status_code, 400)
            self.assertEqual(response.json()["detail"], "Invalid JSON data provided.")
        self.assertEqual(self.client.get("/api/users/storage").json(), {"storage": {}})

    def test_get_storage_missing_user_returns_empty(self):
        self._register_and_login()
        self.context.repository.users.clear()
        response = self.client.get("/api/users/storage")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"storage": {}})

    def test_save_storage_not_applied(self):
        self._register_and_login()
        self.context.repository.users.clear()
        response = self.client.post("/api/users/storage", json={"a": 1})
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()["detail"], "Failed to update storage.")

    def test_add_user_validation(self):
        response = self.client.post(
            "/api/users/add", json={"email": "a@b.com", "password": "pw"}
        )
        self.assertEqual(response.status_code, 422)
        response = self.client.post(
            "/api/users/add", json={"email": "a@b.com", "username": "a", "password": ""}
        )
        self.assertEqual(response.status_code, 422)

    def test_logout_store_failure(self):
        self._register_and_login()
        with patch.object(
            self.context.sessions, "destroy", side_effect=SessionStoreError("down")
        ):
            response = self.client.post("/api/users/logout")
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()["detail"], "Could not log out.")

    def test_logout_destroys_session_in_store(self):
        self._register_and_login()
        session_ids = list(self.context.sessions.records)
        self.assertEqual(len(session_ids), 1)
        response = self.client.post("/api/users/logout")
        self.assertEqual(response.status_code, 200)
        self.assertIsNone(self.context.sessions.get(session_ids[0]))
        self.assertEqual(self.client.get("/api/users/info").status_code, 401)

    def test_session_store_outage_on_protected_route(self):
        self._register_and_login()
        with patch.object(
            self.context.sessions, "get", side_effect=SessionStoreError("down")
        ):
            response = self.client.get("/api/users/info")
        self.assertEqual(response.status_code, 500)


class FailingRepositoryTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        settings = _settings(self.tmpdir.name)
        self.repository = MagicMock()
        context = AppContext(
            settings=settings,
            repository=self.repository,
            sessions=InMemorySessionStore(),
            signer=SessionCookieSigner(b"x" * 32, max_age=settings.session_ttl_seconds),
        )
        self.client = TestClient(create_app(context=context))

    def tearDown(self):
        self.client.close()
        self.tmpdir.cleanup()

    def test_add_user_failure(self):
        self.repository.add_user.return_value = False
        response = self.client.post(
            "/api/users/add",
            json={"email": "a@b.com", "username": "a", "password": "pw"},
        )
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()["detail"], "Failed to add user.")

    def test_add_user_rollback_failure(self):
        self.repository.add_user.side_effect = RollbackError("rollback failed")
        response = self.client.post(
            "/api/users/add",
            json={"email": "a@b.com", "username": "a", "password": "pw"},
        )
        self.assertEqual(response.status_code, 500)
        self.assertNotIn("rollback", response.json()["detail"])


class SqlBackedApiTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        settings = _settings(self.tmpdir.name)
        engine = create_engine(
            "sqlite+pysqlite:///:memory:",
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
        context = AppContext(
            settings=settings,
            repository=SqlUserRepository(engine),
            sessions=InMemorySessionStore(),
            signer=SessionCookieSigner(b"y" * 32, max_age=settings.session_ttl_seconds),
        )
        self.client = TestClient(create_app(context=context))

    def tearDown(self):
        self.client.close()
        self.tmpdir.cleanup()

    def test_register_login_and_storage(self):
        self.client.post(
            "/api/users/add",
            json={"email": "s@q.l", "username": "sql", "password": "pw"},
        )
        response = self.client.post(
            "/api/users/login", json={"email": "s@q.l", "password": "pw"}
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.client.post("/api/users/storage", json={"k": [1, 2]}).status_code, 200)
        self.assertEqual(
            self.client.get("/api/users/storage").json(), {"storage": {"k": [1, 2]}}
        )


class LifecycleTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_build_context_defaults_to_in_memory(self):
        settings = _settings(self.tmpdir.name, use_in_memory_backends=False)
        context = build_context(settings)
        self.assertIsInstance(context.repository, InMemoryUserRepository)
        self.assertIsInstance(context.sessions, InMemorySessionStore)
        self.assertTrue(os.path.exists(settings.session_secret_file))

    def test_lifespan_starts_keepalive_and_drains(self):
        app = create_app(_settings(self.tmpdir.name, keepalive_enabled=True))
        with TestClient(app):
            self.assertTrue(app.state.keepalive.running)
        self.assertFalse(app.state.keepalive.running)
        self.assertTrue(app.state.clean_shutdown)

    def test_drain_failure_marks_unclean_shutdown(self):
        app = create_app(_settings(self.tmpdir.name))
        repository = app.state.context.repository
        with patch.object(repository, "close", side_effect=PoolDrainError("stuck")):
            with TestClient(app):
                pass
        self.assertFalse(app.state.clean_shutdown)


if __name__ == "__main__":
    unittest.main()
