import os
import unittest
from unittest.mock import patch

from helpexchange.config import Settings, get_settings


class SettingsTests(unittest.TestCase):
    def test_defaults_without_environment(self):
        with patch.dict(os.environ, {}, clear=True):
            settings = Settings(_env_file=None)
        self.assertIsNone(settings.database_url)
        self.assertFalse(settings.use_in_memory_backends)
        self.assertEqual(settings.otp_ttl_seconds, 600)
        self.assertEqual(settings.email_token_ttl_seconds, 86400)
        self.assertEqual(settings.log_level, "INFO")

    def test_reads_upper_case_environment_variables(self):
        env = {
            "DATABASE_URL": "postgresql://db.internal/help",
            "USE_IN_MEMORY_BACKENDS": "true",
            "SNAPSHOT_PATH": "/var/lib/help/store.json",
            "OTP_TTL_SECONDS": "120",
            "COS_BUCKET": "avatars",
            "AWS_ACCESS_KEY_ID": "key-id",
        }
        with patch.dict(os.environ, env, clear=True):
            settings = Settings(_env_file=None)
        self.assertEqual(settings.database_url, "postgresql://db.internal/help")
        self.assertTrue(settings.use_in_memory_backends)
        self.assertEqual(settings.snapshot_path, "/var/lib/help/store.json")
        self.assertEqual(settings.otp_ttl_seconds, 120)
        self.assertEqual(settings.cos_bucket, "avatars")
        self.assertEqual(settings.aws_access_key_id, "key-id")

    def test_get_settings_is_cached(self):
        get_settings.cache_clear()
        self.addCleanup(get_settings.cache_clear)
        self.assertIs(get_settings(), get_settings())


if __name__ == "__main__":
    unittest.main()
