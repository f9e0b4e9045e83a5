import unittest

from db_helpers import SqliteDatabase, make_settings

from shared.errors import ValidationError
from shared.services.config_store import (
    DEFAULT_NAMING_TEMPLATE,
    REDACTED,
    ConfigStore,
    UploadConfig,
)


class TestUploadConfigModel(unittest.TestCase):
    def test_unlimited_by_default(self):
        cfg = UploadConfig()
        self.assertIsNone(cfg.max_size_bytes)
        self.assertEqual(cfg.allowed_extensions, [])

    def test_camel_case_and_normalization(self):
        cfg = UploadConfig.model_validate({"maxSizeMB": 2, "allowedExtensions": [".PDF", "jpg", ""]})
        self.assertEqual(cfg.max_size_bytes, 2 * 1024 * 1024)
        self.assertEqual(cfg.allowed_extensions, ["pdf", "jpg"])

    def test_csv_extensions(self):
        self.assertEqual(UploadConfig.model_validate({"allowed_extensions": "png, .Gif"}).allowed_extensions, ["png", "gif"])


class TestConfigStore(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.db = SqliteDatabase()
        await self.db.create_all()
        self.settings = make_settings(SMTP_HOST="env-smtp.test", SMTP_PASSWORD="env-secret")

    async def asyncTearDown(self):
        await self.db.dispose()

    async def test_defaults_when_missing(self):
        async with self.db.factory() as session:
            store = ConfigStore(session, settings=self.settings)
            self.assertEqual((await store.get_naming()).template, DEFAULT_NAMING_TEMPLATE)
            self.assertIsNone((await store.get_upload()).max_size_mb)
            self.assertIsNone(await store.get_s3())

    async def test_smtp_falls_back_to_settings(self):
        async with self.db.factory() as session:
            smtp = await ConfigStore(session, settings=self.settings).get_smtp()
        self.assertEqual(smtp.host, "env-smtp.test")
        self.assertEqual(smtp.password, "env-secret")

    async def test_upsert_by_key(self):
        async with self.db.factory() as session:
            store = ConfigStore(session, settings=self.settings)
            await store.set_raw("custom", {"a": 1})
            await store.set_raw("custom", {"a": 2})
            await session.commit()
            self.assertEqual(await store.get_raw("custom"), {"a": 2})

    async def test_invalid_stored_blob_falls_back(self):
        async with self.db.factory() as session:
            store = ConfigStore(session, settings=self.settings)
            await store.set_raw("upload_config", {"maxSizeMB": -5})
            self.assertIsNone((await store.get_upload()).max_size_mb)

    async def test_save_rejects_invalid_typed_value(self):
        async with self.db.factory() as session:
            store = ConfigStore(session, settings=self.settings)
            with self.assertRaises(ValidationError):
                await store.save("upload_config", {"maxSizeMB": "lots"})
            self.assertIsNone(await store.get_raw("upload_config"))

    async def test_save_normalizes_and_reads_back_typed(self):
        async with self.db.factory() as session:
            store = ConfigStore(session, settings=self.settings)
            await store.save("naming_schema", {"schema": "{space}/{filename}", "options": {"lowercase": True}})
            naming = await store.get_naming()
        self.assertEqual(naming.template, "{space}/{filename}")
        self.assertTrue(naming.options.lowercase)

    async def test_secrets_redacted_for_admin_and_kept_on_resave(self):
        async with self.db.factory() as session:
            store = ConfigStore(session, settings=self.settings)
            await store.save(
                "smtp_config",
                {"host": "mail.test", "port": 465, "secure": True, "auth": {"user": "u", "pass": "p4ss"}, "from": {"address": "a@b.co"}},
            )
            shown = await store.load_for_admin("smtp_config")
            self.assertEqual(shown["password"], REDACTED)
            self.assertEqual(shown["username"], "u")

            shown["port"] = 587
            await store.save("smtp_config", shown)
            smtp = await store.get_smtp()
        self.assertEqual(smtp.password, "p4ss")
        self.assertEqual(smtp.port, 587)
        self.assertEqual(smtp.from_address, "a@b.co")

    async def test_unknown_keys_stored_opaque(self):
        async with self.db.factory() as session:
            store = ConfigStore(session, settings=self.settings)
            await store.save("feature_flags", ["x", "y"])
            self.assertEqual(await store.load_for_admin("feature_flags"), ["x", "y"])


if __name__ == "__main__":
    unittest.main()
