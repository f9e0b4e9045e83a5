import unittest
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import func, select

from db_helpers import SqliteDatabase, make_settings

from shared.enums import LogEventType, UploadStatus
from shared.errors import ValidationError
from shared.models import AdminSession, AdminUser, ConfigEntry, File, Log, Space, UserSession
from shared.services.cleanup import CleanupService, daily_stats_key
from shared.services.cleanup_scheduler import CleanupScheduler
from shared.utils import utc_now


class TestCleanupService(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.db = SqliteDatabase()
        await self.db.create_all()
        self.settings = make_settings()
        self.service = CleanupService(self.db.factory, self.settings)
        self.now = utc_now()
        async with self.db.factory() as session:
            space = Space(space_name="Project-X", is_authenticated=True)
            admin = AdminUser(username="admin", password_hash="x", email="ops@example.com")
            session.add_all([space, admin])
            await session.flush()
            self.space_id = space.id
            self.admin_id = admin.id
            await session.commit()

    async def asyncTearDown(self):
        await self.db.dispose()

    async def count(self, model, *where):
        async with self.db.factory() as session:
            return (await session.execute(select(func.count()).select_from(model).where(*where))).scalar_one()

    async def test_sessions(self):
        now = self.now
        async with self.db.factory() as session:
            session.add_all(
                [
                    UserSession(space_id=self.space_id, session_token="live", expires_at=now + timedelta(hours=1)),
                    UserSession(space_id=self.space_id, session_token="stale", expires_at=now - timedelta(hours=1)),
                    UserSession(space_id=self.space_id, session_token="ancient", expires_at=now - timedelta(days=8)),
                    AdminSession(admin_user_id=self.admin_id, session_token="a-live", expires_at=now + timedelta(hours=1)),
                    AdminSession(admin_user_id=self.admin_id, session_token="a-stale", expires_at=now - timedelta(days=2)),
                    AdminSession(admin_user_id=self.admin_id, session_token="a-ancient", expires_at=now - timedelta(days=31)),
                ]
            )
            await session.commit()

        result = await self.service.cleanup_sessions(now_utc=now)
        self.assertEqual(result["deleted_user_sessions"], 1)
        self.assertEqual(result["deleted_admin_sessions"], 1)
        self.assertEqual(result["deactivated_user_sessions"], 2)
        self.assertEqual(result["deactivated_admin_sessions"], 2)

        self.assertEqual(await self.count(UserSession), 2)
        self.assertEqual(await self.count(UserSession, UserSession.is_active == True), 1)
        self.assertEqual(await self.count(AdminSession, AdminSession.is_active == True), 1)
        self.assertEqual(await self.count(Log, Log.event_type == LogEventType.SESSION_CLEANUP.value), 1)

        # Nothing left to do, nothing logged
        again = await self.service.cleanup_sessions(now_utc=now)
        self.assertFalse(any(again.values()))
        self.assertEqual(await self.count(Log, Log.event_type == LogEventType.SESSION_CLEANUP.value), 1)

    async def test_expired_tokens_cleared(self):
        now = self.now
        async with self.db.factory() as session:
            session.add_all(
                [
                    Space(space_name="old", magic_token_hash="h1", token_expires_at=now - timedelta(minutes=1)),
                    Space(space_name="fresh", magic_token_hash="h2", token_expires_at=now + timedelta(hours=1)),
                ]
            )
            await session.commit()

        self.assertEqual(await self.service.cleanup_expired_tokens(now_utc=now), {"cleared_tokens": 1})
        async with self.db.factory() as session:
            old = (await session.execute(select(Space).where(Space.space_name == "old"))).scalar_one()
            fresh = (await session.execute(select(Space).where(Space.space_name == "fresh"))).scalar_one()
        self.assertIsNone(old.magic_token_hash)
        self.assertIsNone(old.token_expires_at)
        self.assertEqual(fresh.magic_token_hash, "h2")

    async def test_old_logs_deleted(self):
        now = self.now
        async with self.db.factory() as session:
            session.add_all(
                [
                    Log(event_type=LogEventType.UPLOAD_INIT.value, created_at=now - timedelta(days=91)),
                    Log(event_type=LogEventType.UPLOAD_INIT.value, created_at=now - timedelta(days=89)),
                ]
            )
            await session.commit()

        self.assertEqual(await self.service.cleanup_old_logs(now_utc=now), {"deleted_logs": 1})
        self.assertEqual(await self.count(Log, Log.event_type == LogEventType.UPLOAD_INIT.value), 1)
        self.assertEqual(await self.count(Log, Log.event_type == LogEventType.LOG_CLEANUP.value), 1)

    async def test_daily_stats(self):
        day = date(2024, 3, 1)
        inside = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
        outside = datetime(2024, 3, 2, 0, 0, tzinfo=timezone.utc)
        async with self.db.factory() as session:
            session.add_all(
                [
                    Space(space_name="new-1", created_at=inside),
                    File(
                        space_id=self.space_id, original_name="a.pdf", s3_key="k/a", file_size=100, mime_type="application/pdf",
                        upload_status=UploadStatus.COMPLETED.value, upload_id="u1", completed_at=inside,
                    ),
                    File(
                        space_id=self.space_id, original_name="b.pdf", s3_key="k/b", file_size=50, mime_type="application/pdf",
                        upload_status=UploadStatus.COMPLETED.value, upload_id="u2", completed_at=inside,
                    ),
                    File(
                        space_id=self.space_id, original_name="c.pdf", s3_key="k/c", file_size=999, mime_type="application/pdf",
                        upload_status=UploadStatus.COMPLETED.value, upload_id="u3", completed_at=outside,
                    ),
                    Log(event_type=LogEventType.MAGIC_LINK_REQUESTED.value, ip_address="1.1.1.1", created_at=inside),
                    Log(event_type=LogEventType.MAGIC_LINK_REQUESTED.value, ip_address="1.1.1.1", created_at=inside),
                    Log(event_type=LogEventType.UPLOAD_INIT.value, ip_address="2.2.2.2", created_at=inside),
                ]
            )
            await session.commit()

        stats = await self.service.generate_daily_stats(day=day)
        self.assertEqual(stats["date"], "2024-03-01")
        self.assertEqual(stats["new_spaces"], 1)
        self.assertEqual(stats["completed_uploads"], 2)
        self.assertEqual(stats["uploaded_bytes"], 150)
        self.assertEqual(stats["magic_link_requests"], 2)
        self.assertEqual(stats["unique_ips"], 2)

        async with self.db.factory() as session:
            row = await session.get(ConfigEntry, daily_stats_key(day))
        self.assertEqual(row.value["uploaded_bytes"], 150)

    async def test_daily_stats_defaults_to_yesterday(self):
        now = datetime(2026, 10, 19, 1, 0, tzinfo=timezone.utc)
        stats = await self.service.generate_daily_stats(now_utc=now)
        self.assertEqual(stats["date"], "2026-10-18")

    async def test_run_all_and_unknown_kind(self):
        results = await self.service.run("all")
        self.assertEqual(set(results), {"sessions", "tokens", "logs", "stats"})
        self.assertEqual(set(await self.service.run("Tokens")), {"tokens"})
        with self.assertRaises(ValidationError):
            await self.service.run("bogus")


class TestCleanupScheduler(unittest.IsolatedAsyncioTestCase):
    async def test_start_stop_and_status(self):
        scheduler = CleanupScheduler(CleanupService(None, make_settings()), timezone="UTC")
        self.assertEqual(scheduler.status(), {"running": False, "jobs": []})

        scheduler.start()
        try:
            status = scheduler.status()
            self.assertTrue(status["running"])
            self.assertEqual(
                {j["id"] for j in status["jobs"]},
                {"session_cleanup", "token_cleanup", "log_cleanup", "daily_stats"},
            )
            self.assertTrue(all(j["next_run_at"].endswith("Z") for j in status["jobs"]))
        finally:
            scheduler.stop()
        self.assertFalse(scheduler.running)

    def test_unknown_timezone_falls_back_to_utc(self):
        scheduler = CleanupScheduler(CleanupService(None, make_settings()), timezone="Mars/Olympus")
        self.assertEqual(str(scheduler.tz), "UTC")


if __name__ == "__main__":
    unittest.main()
