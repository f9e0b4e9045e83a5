import asyncio
import unittest
from urllib.parse import parse_qs, urlparse

from fastapi.testclient import TestClient

from db_helpers import FakeMailer, SqliteDatabase, make_settings

from shared.services.admin_auth import AdminAuthService
from shared.services.captcha import CaptchaVerifier
from web.app.main import create_app


class ApiTestCase(unittest.TestCase):
    settings_overrides: dict = {}

    def setUp(self):
        self.db = SqliteDatabase()
        asyncio.run(self.db.create_all())
        self.settings = make_settings(**self.settings_overrides)
        self.mailer = FakeMailer()
        self.app = create_app(
            settings=self.settings,
            session_factory=self.db.factory,
            mailer=self.mailer,
            captcha=CaptchaVerifier("", self.settings.HCAPTCHA_VERIFY_URL),
            enable_scheduler=False,
        )
        self.client = TestClient(self.app)

    def tearDown(self):
        self.client.close()
        asyncio.run(self.db.dispose())

    def request_link(self, email="alice@example.com", space_name="Project-X", **headers):
        return self.client.post("/auth/magic-link", json={"email": email, "space_name": space_name}, headers=headers)

    def sign_in(self, space_name="Project-X") -> str:
        r = self.request_link(space_name=space_name)
        self.assertEqual(r.status_code, 200, r.text)
        r = self.client.post("/auth/consume", json={"token": r.json()["magic_token"]})
        self.assertEqual(r.status_code, 200, r.text)
        return r.json()["session_token"]


class TestAuthFlow(ApiTestCase):
    def test_magic_link_to_verified_session(self):
        r = self.request_link()
        self.assertEqual(r.status_code, 200, r.text)
        body = r.json()
        self.assertTrue(body["success"])
        self.assertTrue(body["email_sent"])
        self.assertEqual(len(self.mailer.sent), 1)

        r = self.client.get("/auth/consume", params={"token": body["magic_token"]}, follow_redirects=False)
        self.assertEqual(r.status_code, 302)
        location = urlparse(r.headers["location"])
        self.assertEqual(f"{location.scheme}://{location.netloc}", "http://front.test")
        query = parse_qs(location.query)
        self.assertEqual(query["space"], ["Project-X"])
        session_token = query["session"][0]

        r = self.client.get("/auth/verify", headers={"x-session-token": session_token})
        self.assertEqual(r.status_code, 200, r.text)
        session = r.json()["session"]
        self.assertEqual(session["spaceName"], "Project-X")
        self.assertTrue(session["isActive"])
        self.assertTrue(session["expiresAt"].endswith("Z"))
        self.assertNotIn("email", session)

        # Bearer works too
        r = self.client.get("/auth/verify", headers={"Authorization": f"Bearer {session_token}"})
        self.assertEqual(r.status_code, 200)

    def test_second_consume_redirects_with_error(self):
        token = self.request_link().json()["magic_token"]
        self.client.get("/auth/consume", params={"token": token}, follow_redirects=False)
        r = self.client.get("/auth/consume", params={"token": token}, follow_redirects=False)
        self.assertEqual(r.status_code, 302)
        self.assertEqual(parse_qs(urlparse(r.headers["location"]).query)["error"], ["Invalid or expired token"])

        r = self.client.post("/auth/consume", json={"token": token})
        self.assertEqual(r.status_code, 401)
        self.assertEqual(r.json(), {"success": False, "error": "Invalid or expired token"})

    def test_invalid_email_rejected(self):
        r = self.request_link(email="not-an-email")
        self.assertEqual(r.status_code, 400)
        self.assertFalse(r.json()["success"])

    def test_rate_limit(self):
        for i in range(5):
            r = self.request_link(space_name=f"space-{i}")
            self.assertEqual(r.status_code, 200, r.text)
        r = self.request_link(space_name="space-6")
        self.assertEqual(r.status_code, 429)
        self.assertEqual(r.headers["Retry-After"], "3600")
        self.assertEqual(r.headers["X-RateLimit-Remaining"], "0")
        self.assertEqual(len(self.mailer.sent), 5)

        # Forwarded headers from an untrusted peer do not reset the count
        r = self.request_link(**{"X-Forwarded-For": "203.0.113.9"})
        self.assertEqual(r.status_code, 429)

    def test_missing_or_unknown_session(self):
        self.assertEqual(self.client.get("/auth/verify").status_code, 401)
        self.assertEqual(self.client.get("/auth/verify", headers={"x-session-token": "nope"}).status_code, 401)
        self.assertEqual(self.client.get("/upload/files").status_code, 401)

    def test_logout(self):
        token = self.sign_in()
        headers = {"x-session-token": token}
        self.assertEqual(self.client.post("/auth/logout", headers=headers).status_code, 200)
        self.assertEqual(self.client.get("/auth/verify", headers=headers).status_code, 401)


class TestTrustedProxy(ApiTestCase):
    settings_overrides = {"FORWARDED_ALLOW_IPS": "testclient"}

    def test_forwarded_clients_counted_separately(self):
        for i in range(5):
            self.assertEqual(self.request_link(**{"X-Forwarded-For": "203.0.113.1"}).status_code, 200)
        self.assertEqual(self.request_link(**{"X-Forwarded-For": "203.0.113.1"}).status_code, 429)
        r = self.request_link(**{"X-Forwarded-For": "203.0.113.9"})
        self.assertEqual(r.status_code, 200, r.text)


class TestProductionMode(ApiTestCase):
    settings_overrides = {"ENVIRONMENT": "production"}

    def test_raw_token_not_exposed(self):
        r = self.request_link()
        self.assertEqual(r.status_code, 200, r.text)
        self.assertNotIn("magic_token", r.json())
        self.assertNotIn("magic_link", r.json())


class TestUploads(ApiTestCase):
    def setUp(self):
        super().setUp()
        self.headers = {"x-session-token": self.sign_in()}

    def init(self, **overrides):
        body = {"filename": "report.pdf", "file_size": 2048, "mime_type": "application/pdf"}
        body.update(overrides)
        return self.client.post("/upload/init", json=body, headers=self.headers)

    def test_upload_lifecycle(self):
        r = self.init()
        self.assertEqual(r.status_code, 200, r.text)
        ticket = r.json()
        self.assertRegex(ticket["s3_key"], r"/Project-X/report-[a-z0-9]{8}\.pdf$")

        r = self.client.post("/upload/complete", json={"upload_id": ticket["upload_id"], "checksum": "abc"}, headers=self.headers)
        self.assertEqual(r.status_code, 200, r.text)
        self.assertEqual(r.json()["file"]["upload_status"], "completed")

        r = self.client.post("/upload/complete", json={"upload_id": ticket["upload_id"]}, headers=self.headers)
        self.assertEqual(r.status_code, 404)

        r = self.client.get("/upload/files", headers=self.headers)
        self.assertEqual(r.status_code, 200)
        body = r.json()
        self.assertEqual(body["pagination"], {"page": 1, "limit": 20, "total": 1, "pages": 1})
        self.assertEqual(body["space"]["name"], "Project-X")

        url = f"/upload/files/{ticket['file_id']}"
        self.assertEqual(self.client.delete(url, headers=self.headers).status_code, 200)
        self.assertEqual(self.client.delete(url, headers=self.headers).status_code, 404)
        self.assertEqual(self.client.get("/upload/files", headers=self.headers).json()["pagination"]["total"], 0)

    def test_other_space_cannot_touch_files(self):
        ticket = self.init().json()
        other = {"x-session-token": self.sign_in(space_name="Other")}
        r = self.client.post("/upload/complete", json={"upload_id": ticket["upload_id"]}, headers=other)
        self.assertEqual(r.status_code, 404)
        self.assertEqual(self.client.delete(f"/upload/files/{ticket['file_id']}", headers=other).status_code, 404)

    def test_bad_input(self):
        self.assertEqual(self.init(file_size=-1).status_code, 400)
        self.assertEqual(self.init(filename="").status_code, 400)
        self.assertEqual(self.client.get("/upload/files", params={"status": "bogus"}, headers=self.headers).status_code, 400)


class TestAdmin(ApiTestCase):
    def setUp(self):
        super().setUp()

        async def _seed():
            async with self.db.factory() as session:
                await AdminAuthService(session, bcrypt_rounds=4).ensure_admin_user(
                    username="admin", password="correct-horse", email="ops@example.com"
                )
                await session.commit()

        asyncio.run(_seed())
        r = self.client.post("/admin/login", json={"username": "admin", "password": "correct-horse"})
        self.assertEqual(r.status_code, 200, r.text)
        self.login = r.json()
        self.set_cookie = r.headers.get("set-cookie", "")
        self.headers = {"Authorization": f"Bearer {self.login['session_token']}"}

    def test_login_and_verify(self):
        self.assertIn("admin_session=", self.set_cookie)
        self.assertIn("httponly", self.set_cookie.lower())
        self.assertEqual(self.login["user"]["username"], "admin")

        r = self.client.get("/admin/verify", headers=self.headers)
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json()["user"]["email"], "ops@example.com")

        r = self.client.get("/admin/verify", headers={"x-admin-session": self.login["session_token"]})
        self.assertEqual(r.status_code, 200)

    def test_wrong_password(self):
        r = self.client.post("/admin/login", json={"username": "admin", "password": "nope-nope"})
        self.assertEqual(r.status_code, 401)

    def test_user_session_is_not_admin(self):
        token = self.sign_in()
        self.assertEqual(self.client.get("/admin/verify", headers={"Authorization": f"Bearer {token}"}).status_code, 401)
        self.assertEqual(self.client.get("/admin/dashboard", headers={"x-admin-session": "nope"}).status_code, 401)

    def test_config_roundtrip_and_upload_cap(self):
        r = self.client.post(
            "/admin/config",
            json={"action": "save_config", "key": "upload_config", "value": {"maxSizeMB": 1}},
            headers=self.headers,
        )
        self.assertEqual(r.status_code, 200, r.text)

        r = self.client.post("/admin/config", json={"action": "get_config", "key": "upload_config"}, headers=self.headers)
        self.assertEqual(r.json()["value"]["max_size_mb"], 1)

        r = self.client.post(
            "/admin/config",
            json={"action": "save_config", "key": "upload_config", "value": {"maxSizeMB": "lots"}},
            headers=self.headers,
        )
        self.assertEqual(r.status_code, 400)

        user = {"x-session-token": self.sign_in()}
        body = {"filename": "big.bin", "file_size": 2 * 1024 * 1024, "mime_type": "application/octet-stream"}
        r = self.client.post("/upload/init", json=body, headers=user)
        self.assertEqual(r.status_code, 400)
        files = self.client.get("/admin/files", headers=self.headers).json()
        self.assertEqual(files["pagination"]["total"], 0)

    def test_smtp_secret_redacted(self):
        value = {"host": "mail.test", "port": 587, "auth": {"user": "u", "pass": "hunter22"}}
        r = self.client.post("/admin/config", json={"action": "save_config", "key": "smtp_config", "value": value}, headers=self.headers)
        self.assertEqual(r.status_code, 200, r.text)
        self.assertNotIn("hunter22", r.text)

    def test_config_requires_key_and_known_action(self):
        r = self.client.post("/admin/config", json={"action": "get_config"}, headers=self.headers)
        self.assertEqual(r.status_code, 400)
        r = self.client.post("/admin/config", json={"action": "explode", "key": "x"}, headers=self.headers)
        self.assertEqual(r.status_code, 400)

    def test_update_email_and_password(self):
        r = self.client.post("/admin/update", json={"action": "update_email", "email": "New@Example.com"}, headers=self.headers)
        self.assertEqual(r.json()["email"], "new@example.com")

        r = self.client.post("/admin/update", json={"action": "update_password", "new_password": "short"}, headers=self.headers)
        self.assertEqual(r.status_code, 400)
        r = self.client.post("/admin/update", json={"action": "update_password", "new_password": "much-longer-pass"}, headers=self.headers)
        self.assertEqual(r.status_code, 200)
        r = self.client.post("/admin/login", json={"username": "admin", "password": "much-longer-pass"})
        self.assertEqual(r.status_code, 200)

    def test_smtp_test(self):
        r = self.client.post("/admin/test-smtp", json={"email": "ops@example.com"}, headers=self.headers)
        self.assertEqual(r.status_code, 200, r.text)
        self.assertTrue(r.json()["email_sent"])
        self.assertEqual(self.mailer.sent[-1]["To"], "ops@example.com")

        self.mailer.fail = True
        r = self.client.post("/admin/test-smtp", json={}, headers=self.headers)
        self.assertEqual(r.status_code, 502)

    def test_dashboard_files_and_logs(self):
        user = {"x-session-token": self.sign_in()}
        self.client.post("/upload/init", json={"filename": "a.txt", "file_size": 3, "mime_type": "text/plain"}, headers=user)

        r = self.client.get("/admin/dashboard", headers=self.headers)
        self.assertEqual(r.status_code, 200, r.text)
        data = r.json()
        self.assertIn("stats", data)
        self.assertIn("recentActivity", data)
        self.assertIn("activeSpaces", data)

        files = self.client.get("/admin/files", headers=self.headers).json()
        self.assertEqual(files["files"][0]["space_name"], "Project-X")

        logs = self.client.get("/admin/logs", params={"event_type": "upload_init"}, headers=self.headers).json()
        self.assertEqual(logs["pagination"]["total"], 1)
        self.assertEqual(logs["logs"][0]["event_type"], "upload_init")

    def test_cleanup(self):
        r = self.client.post("/admin/cleanup", json={"type": "sessions"}, headers=self.headers)
        self.assertEqual(r.status_code, 200, r.text)
        self.assertEqual(set(r.json()["results"]), {"sessions"})
        r = self.client.post("/admin/cleanup", json={"type": "bogus"}, headers=self.headers)
        self.assertEqual(r.status_code, 400)

    def test_logout(self):
        self.assertEqual(self.client.post("/admin/logout", headers=self.headers).status_code, 200)
        self.assertEqual(self.client.get("/admin/verify", headers=self.headers).status_code, 401)


class TestHealth(ApiTestCase):
    def test_health(self):
        r = self.client.get("/health")
        self.assertEqual(r.status_code, 200)
        body = r.json()
        self.assertEqual(body["status"], "ok")
        self.assertTrue(body["database"]["connected"])
        self.assertEqual(body["scheduler"], {"running": False, "jobs": []})


if __name__ == "__main__":
    unittest.main()
