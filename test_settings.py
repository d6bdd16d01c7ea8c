import json
import os
import tempfile
import unittest
from unittest import mock

from metrics import DATING_OWN_FIRST, DATING_TRIP_LINK_FIRST
from settings import Settings


class TestSettingsFromEnv(unittest.TestCase):
    def test_roster_env_and_file_are_merged(self):
        with tempfile.NamedTemporaryFile("w", suffix=".json", delete=False) as fh:
            json.dump({"seniors": ["Sam Lee", "Jane Doe"], "new_hires": ["Alex Kim"]}, fh)
        self.addCleanup(os.remove, fh.name)

        env = {
            "SENIOR_AGENTS": "Jane Doe, John Roe",
            "ROSTER_FILE": fh.name,
            "NON_CONVERTED_DATING": "trip_link_first",
            "MAX_UPLOAD_MB": "10",
            "FLASK_SECRET_KEY": "s3cret",
        }
        with mock.patch.dict(os.environ, env):
            s = Settings.from_env()

        self.assertEqual(s.seniors, ["Jane Doe", "John Roe", "Sam Lee"])
        self.assertEqual(s.new_hires, ["Alex Kim"])
        self.assertEqual(s.max_upload_mb, 10)
        self.assertEqual(s.secret_key, "s3cret")
        self.assertEqual(s.aggregation_options().non_converted_dating, DATING_TRIP_LINK_FIRST)

    def test_invalid_dating_falls_back(self):
        with mock.patch.dict(os.environ, {"NON_CONVERTED_DATING": "sometimes"}):
            s = Settings.from_env()
        self.assertEqual(s.non_converted_dating, DATING_OWN_FIRST)

    def test_missing_roster_file(self):
        with mock.patch.dict(os.environ, {"ROSTER_FILE": "/nonexistent/roster.json", "SENIOR_AGENTS": ""}):
            s = Settings.from_env()
        self.assertEqual(s.seniors, [])


if __name__ == "__main__":
    unittest.main()
