import os
import tempfile
import time
import unittest
from pathlib import Path
from unittest import mock

from storehouse.cleanup import cleanup_temp_files
from storehouse.config import (
    KEY_FILENAME,
    ConfigurationError,
    StorehouseConfig,
    load_config,
    resolve_secret,
)


class ResolveSecretTests(unittest.TestCase):
    def setUp(self):
        self.work_dir = tempfile.TemporaryDirectory()
        self.key_file = Path(self.work_dir.name) / KEY_FILENAME

    def tearDown(self):
        self.work_dir.cleanup()

    def test_explicit_secret_wins(self):
        self.key_file.write_text("from-file\n", encoding="utf-8")
        with mock.patch.dict(os.environ, {"STOREHOUSE_SECRET": "from-env"}):
            self.assertEqual(resolve_secret("explicit", key_file=self.key_file), "explicit")

    def test_environment_before_key_file(self):
        self.key_file.write_text("from-file\n", encoding="utf-8")
        with mock.patch.dict(os.environ, {"STOREHOUSE_SECRET": "from-env"}):
            self.assertEqual(resolve_secret(key_file=self.key_file), "from-env")

    def test_key_file_is_stripped(self):
        self.key_file.write_text("  from-file\n", encoding="utf-8")
        with mock.patch.dict(os.environ, {}, clear=True):
            self.assertEqual(resolve_secret(key_file=self.key_file), "from-file")

    def test_missing_secret_raises(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            with self.assertRaises(ConfigurationError):
                resolve_secret(key_file=self.key_file)

    def test_empty_key_file_counts_as_missing(self):
        self.key_file.write_text("\n", encoding="utf-8")
        with mock.patch.dict(os.environ, {}, clear=True):
            with self.assertRaises(ConfigurationError):
                resolve_secret(key_file=self.key_file)


class LoadConfigTests(unittest.TestCase):
    def test_defaults(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            config = load_config(secret="k")
        self.assertEqual(config.directory, "./")
        self.assertTrue(config.overwrite)
        self.assertEqual(config.upload_url, "/upload")
        self.assertEqual(config.fetch_url, "/fetch")
        self.assertFalse(config.allow_download)
        self.assertEqual(config.port, 8888)
        self.assertEqual(config.ssl_port, 4443)
        self.assertEqual(config.signature_algorithm, "sha1")
        self.assertFalse(config.tls_enabled)

    def test_environment_values(self):
        env = {
            "STOREHOUSE_SECRET": "k",
            "STOREHOUSE_OVERWRITE": "no",
            "STOREHOUSE_PORT": "9000",
            "STOREHOUSE_FETCH_TIMEOUT": "2.5",
            "STOREHOUSE_SIGNATURE_ALGORITHM": "SHA256",
            "STOREHOUSE_CORS": "true",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            config = load_config()
        self.assertFalse(config.overwrite)
        self.assertEqual(config.port, 9000)
        self.assertEqual(config.fetch_timeout, 2.5)
        self.assertEqual(config.signature_algorithm, "sha256")
        self.assertTrue(config.cors)

    def test_invalid_environment_values_fall_back(self):
        env = {"STOREHOUSE_PORT": "not-a-port", "STOREHOUSE_OVERWRITE": "maybe"}
        with mock.patch.dict(os.environ, env, clear=True):
            with self.assertLogs("storehouse.config", level="WARNING"):
                config = load_config(secret="k")
        self.assertEqual(config.port, 8888)
        self.assertTrue(config.overwrite)

    def test_overrides_beat_environment_and_none_is_ignored(self):
        with mock.patch.dict(os.environ, {"STOREHOUSE_PORT": "9000"}, clear=True):
            config = load_config(secret="k", port=7000, directory=None)
        self.assertEqual(config.port, 7000)
        self.assertEqual(config.directory, "./")

    def test_secret_hidden_from_repr(self):
        config = StorehouseConfig(secret="very-secret")
        self.assertNotIn("very-secret", repr(config))
        self.assertNotIn("very-secret", config.secret_fingerprint())
        self.assertEqual(len(config.secret_fingerprint()), 12)

    def test_validation(self):
        invalid = [
            {"secret": ""},
            {"secret": "k", "signature_algorithm": "md5"},
            {"secret": "k", "upload_url": "upload"},
            {"secret": "k", "upload_url": "/same", "fetch_url": "/same"},
        ]
        for kwargs in invalid:
            with self.subTest(kwargs=kwargs):
                with self.assertRaises(ConfigurationError):
                    StorehouseConfig(**kwargs)

    def test_staging_dir(self):
        self.assertEqual(
            StorehouseConfig(secret="k", directory="/srv/files").staging_dir,
            os.path.join("/srv/files", ".storehouse_tmp"),
        )
        self.assertEqual(
            StorehouseConfig(secret="k", temp_dir="/var/tmp/storehouse").staging_dir,
            "/var/tmp/storehouse",
        )

    def test_within_staging_dir(self):
        config = StorehouseConfig(secret="k", directory="/srv/files")
        self.assertTrue(config.within_staging_dir("/srv/files/.storehouse_tmp"))
        self.assertTrue(config.within_staging_dir("/srv/files/.storehouse_tmp/upload_x.tmp"))
        self.assertFalse(config.within_staging_dir("/srv/files/.storehouse_tmp2/x"))
        self.assertFalse(config.within_staging_dir("/srv/files/a.txt"))

    def test_tls_requires_key_and_cert(self):
        self.assertFalse(StorehouseConfig(secret="k", ssl_key="key.pem").tls_enabled)
        self.assertTrue(StorehouseConfig(secret="k", ssl_key="key.pem", ssl_cert="cert.pem").tls_enabled)


class CleanupTempFilesTests(unittest.TestCase):
    def setUp(self):
        self.storage_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.storage_dir.name)
        self.config = StorehouseConfig(secret="k", directory=str(self.root), temp_max_age_minutes=60)
        self.staging = Path(self.config.staging_dir)
        self.staging.mkdir()

    def tearDown(self):
        self.storage_dir.cleanup()

    def test_removes_only_stale_temp_files(self):
        now = time.time()
        stale = self.staging / "upload_old.tmp"
        fresh = self.staging / "upload_new.tmp"
        other = self.staging / "notes.txt"
        for path in (stale, fresh, other):
            path.write_bytes(b"x")
        two_hours_ago = now - 2 * 60 * 60
        os.utime(stale, (two_hours_ago, two_hours_ago))
        os.utime(other, (two_hours_ago, two_hours_ago))

        removed = cleanup_temp_files(self.config, now=now)

        self.assertEqual(removed, 1)
        self.assertFalse(stale.exists())
        self.assertTrue(fresh.exists())
        self.assertTrue(other.exists())

    def test_missing_staging_dir_is_ignored(self):
        self.staging.rmdir()
        self.assertEqual(cleanup_temp_files(self.config), 0)


if __name__ == "__main__":
    unittest.main()
