import io
import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from presence.cli import build_parser, cmd_status
from presence.autonomy.action_journal import append_outbound_journal
from presence.autonomy.config import load_config
from presence.autonomy.runner import load_env


class CliParserTests(unittest.TestCase):
    def test_prune_defaults_to_dry_run(self):
        args = build_parser().parse_args(["prune"])
        self.assertEqual(args.limit, 100)
        self.assertFalse(args.apply)
        self.assertFalse(args.skip_closings)

        args = build_parser().parse_args(["prune", "--apply", "--limit", "20", "--skip-closings"])
        self.assertTrue(args.apply)
        self.assertEqual(args.limit, 20)
        self.assertTrue(args.skip_closings)

    def test_subcommand_is_required(self):
        with patch("sys.stderr", new_callable=io.StringIO), self.assertRaises(SystemExit):
            build_parser().parse_args([])


class CliStatusTests(unittest.TestCase):
    def test_status_reads_persisted_state_only(self):
        with tempfile.TemporaryDirectory() as tmp:
            env = {"PRESENCE_MEMORY_DIR": tmp, "PRESENCE_AGENT_NAME": "status-agent", "NO_COLOR": "1"}
            with patch.dict(os.environ, env, clear=True):
                journal_path = load_config().outbound_journal_path
                append_outbound_journal(journal_path, decision="allowed", kind="reply", content="hi there")
                append_outbound_journal(
                    journal_path, decision="rejected", kind="reply", content="hi there", reason="near-duplicate"
                )
                args = build_parser().parse_args(["status", "--journal", "1"])
                with patch("sys.stdout", new_callable=io.StringIO) as out, patch("sys.stderr", new_callable=io.StringIO):
                    cmd_status(args)

        data = json.loads(out.getvalue())
        self.assertEqual(data["agent"], "status-agent")
        self.assertEqual(len(data["recent_outbound"]), 1)
        self.assertEqual(data["recent_outbound"][0]["decision"], "rejected")
        self.assertEqual(data["outbound_decisions"]["decisions"], {"allowed": 1, "rejected": 1})
        self.assertEqual(data["feed_conversations"]["active"], 0)


class LoadEnvTests(unittest.TestCase):
    def test_dotenv_never_overrides_existing_env(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / ".env"
            path.write_text("PRESENCE_AGENT_NAME=from-file\nPRESENCE_OWNER_ID=owner-1\n", encoding="utf-8")
            with patch.dict(os.environ, {"PRESENCE_AGENT_NAME": "from-env"}, clear=True):
                load_env(path)
                self.assertEqual(os.environ["PRESENCE_AGENT_NAME"], "from-env")
                self.assertEqual(os.environ["PRESENCE_OWNER_ID"], "owner-1")

    def test_missing_dotenv_is_ignored(self):
        with tempfile.TemporaryDirectory() as tmp:
            load_env(Path(tmp) / "missing.env")


if __name__ == "__main__":
    unittest.main()
