from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from hashtag_importer.config import (
    config_sha256,
    env_overrides,
    load_config,
    resolve_runtime_secrets,
)
from hashtag_importer.errors import ConfigError


_VALID_YAML = """\
source:
  kind: mastodon
  endpoint: mastodon.example
  hashtag: "#calisthenics"
  any_hashtags: ["pullups", "#PullUps", "dips"]
  page_size: 20
  requests_per_minute: 1

sink:
  kind: sqlite
  path: state/hashtags.sqlite

pump:
  cycle_interval_seconds: 60
  base_backoff_seconds: 2
  max_backoff_seconds: 120
  max_consecutive_failures: 5

health:
  port: 0
"""


class TestConfig(unittest.TestCase):
    def test_load_config_ok(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "config.yaml"
            path.write_text(_VALID_YAML, encoding="utf-8")

            cfg = load_config(path, environ={})

            self.assertEqual(cfg.source.kind, "mastodon")
            self.assertEqual(cfg.source.page_size, 20)
            self.assertEqual(cfg.source.any_hashtags, ["pullups", "dips"])
            self.assertEqual(cfg.pump.max_backoff_seconds, 120.0)
            self.assertEqual(cfg.health.port, 0)
            self.assertEqual(cfg.cursor.kind, "sqlite")
            self.assertEqual(cfg.cursor.name, "default")

    def test_environment_only(self) -> None:
        env = {
            "HASHTAG_IMPORTER_SOURCE_KIND": "file",
            "HASHTAG_IMPORTER_SOURCE_PATH": "/data/tags.jsonl",
            "HASHTAG_IMPORTER_PAGE_SIZE": "200",
            "HASHTAG_IMPORTER_SINK_KIND": "memory",
            "HASHTAG_IMPORTER_CURSOR_KIND": "file",
            "HASHTAG_IMPORTER_CURSOR_PATH": "/data/cursor.json",
            "HASHTAG_IMPORTER_MAX_CONSECUTIVE_FAILURES": "0",
        }
        cfg = load_config(environ=env)

        self.assertEqual(cfg.source.path, "/data/tags.jsonl")
        self.assertEqual(cfg.source.page_size, 200)
        self.assertEqual(cfg.sink.kind, "memory")
        self.assertEqual(cfg.cursor.path, "/data/cursor.json")
        self.assertEqual(cfg.pump.max_consecutive_failures, 0)
        self.assertEqual(cfg.source.requests_per_minute, 1.0)

    def test_environment_overrides_file(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "config.yaml"
            path.write_text(_VALID_YAML, encoding="utf-8")

            env = {
                "HASHTAG_IMPORTER_SOURCE_HASHTAG": "streetworkout",
                "HASHTAG_IMPORTER_SOURCE_ANY_HASHTAGS": "a, b,,c",
                "HASHTAG_IMPORTER_MAX_BACKOFF_SECONDS": "30",
                "HASHTAG_IMPORTER_PROBE_PORT": "9090",
                "HASHTAG_IMPORTER_LOG_PATH": "  ",
                "HASHTAG_IMPORTER_LOG_LEVEL": "warning",
            }
            cfg = load_config(path, environ=env)

            self.assertEqual(cfg.source.hashtag, "streetworkout")
            self.assertEqual(cfg.source.any_hashtags, ["a", "b", "c"])
            self.assertEqual(cfg.source.endpoint, "mastodon.example")
            self.assertEqual(cfg.pump.max_backoff_seconds, 30.0)
            self.assertEqual(cfg.health.port, 9090)
            self.assertIsNone(cfg.logging.path)
            self.assertEqual(cfg.logging.level, "WARN")

    def test_config_path_from_environment(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "config.yaml"
            path.write_text(_VALID_YAML, encoding="utf-8")

            cfg = load_config(environ={"HASHTAG_IMPORTER_CONFIG": str(path)})
            self.assertEqual(cfg.source.kind, "mastodon")

    def test_missing_file(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(ConfigError) as ctx:
                load_config(Path(td) / "missing.yaml", environ={})
            self.assertIn("not found", str(ctx.exception))

    def test_validation_errors_are_readable(self) -> None:
        cases = [
            "source:\n  kind: mastodon\n  hashtag: x\n",
            "source:\n  kind: file\n",
            "source:\n  kind: apify\n",
            "source:\n  kind: ftp\n",
            "source:\n  kind: file\n  path: a\n  page_size: 0\n",
            "source:\n  kind: file\n  path: a\nunknown: 1\n",
            "source:\n  kind: file\n  path: a\npump:\n  base_backoff_seconds: 10\n  max_backoff_seconds: 1\n",
            "source:\n  kind: file\n  path: a\ncursor:\n  kind: file\n",
            "source:\n  kind: file\n  path: a\nsink:\n  kind: memory\n",
            "source:\n  kind: file\n  path: a\nhealth:\n  port: 70000\n",
            "- just\n- a list\n",
        ]
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "config.yaml"
            for text in cases:
                path.write_text(text, encoding="utf-8")
                with self.assertRaises(ConfigError, msg=text):
                    load_config(path, environ={})

    def test_bad_environment_value(self) -> None:
        env = {
            "HASHTAG_IMPORTER_SOURCE_KIND": "file",
            "HASHTAG_IMPORTER_SOURCE_PATH": "a",
            "HASHTAG_IMPORTER_PAGE_SIZE": "lots",
        }
        with self.assertRaises(ConfigError) as ctx:
            load_config(environ=env)
        self.assertIn("source.page_size", str(ctx.exception))

    def test_env_overrides_ignores_unrelated(self) -> None:
        self.assertEqual(env_overrides({"PATH": "/bin", "HASHTAG_IMPORTER_UNKNOWN": "x"}), {})

    def test_secrets(self) -> None:
        apify = load_config(
            environ={
                "HASHTAG_IMPORTER_SOURCE_KIND": "apify",
                "HASHTAG_IMPORTER_SOURCE_DATASET_ID": "ds_1",
            }
        )
        with self.assertRaises(ConfigError):
            resolve_runtime_secrets(apify, environ={})

        secrets = resolve_runtime_secrets(apify, environ={"HASHTAG_IMPORTER_SOURCE_TOKEN": " t0k "})
        self.assertEqual(secrets.source_token, "t0k")

        mastodon = load_config(
            environ={
                "HASHTAG_IMPORTER_SOURCE_KIND": "mastodon",
                "HASHTAG_IMPORTER_SOURCE_ENDPOINT": "mastodon.example",
                "HASHTAG_IMPORTER_SOURCE_HASHTAG": "x",
            }
        )
        self.assertIsNone(resolve_runtime_secrets(mastodon, environ={}).source_token)

    def test_config_hash_is_stable(self) -> None:
        env = {"HASHTAG_IMPORTER_SOURCE_PATH": "a.jsonl"}
        a = config_sha256(load_config(environ=env))
        b = config_sha256(load_config(environ=dict(env)))
        c = config_sha256(load_config(environ={**env, "HASHTAG_IMPORTER_PAGE_SIZE": "7"}))

        self.assertEqual(a, b)
        self.assertNotEqual(a, c)
        self.assertEqual(len(a), 64)


if __name__ == "__main__":
    unittest.main()
