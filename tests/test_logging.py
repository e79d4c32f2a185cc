"""
OTP Pipeline — Structured Logging Tests

Tests:
  - every line is valid JSON with the base schema
  - RunLogger events carry run_id, workflow and action
  - level filtering drops DEBUG-only item_pending events at INFO
  - exceptions are captured as exception.type / exception.message
"""

import io
import json
import logging
import os
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from core.logging import RunLogger, configure_logging, generate_run_id, get_logger


class _LoggingCase(unittest.TestCase):

    level = "INFO"

    def setUp(self):
        self.stream = io.StringIO()
        configure_logging(level=self.level, stream=self.stream)

    def tearDown(self):
        logging.getLogger("otp_pipeline").handlers.clear()

    def lines(self):
        return [json.loads(l) for l in self.stream.getvalue().splitlines() if l.strip()]


class TestJSONFormat(_LoggingCase):

    def test_schema(self):
        get_logger("store").info("hello %s", "world")
        entry = self.lines()[0]
        self.assertEqual(entry["message"], "hello world")
        self.assertEqual(entry["level"], "INFO")
        self.assertEqual(entry["logger"], "otp_pipeline.store")
        self.assertEqual(entry["service.name"], "otp_pipeline")
        self.assertIn("timestamp", entry)

    def test_exception_fields(self):
        try:
            raise ValueError("bad")
        except ValueError:
            get_logger("x").exception("failed")
        entry = self.lines()[0]
        self.assertEqual(entry["exception.type"], "ValueError")
        self.assertEqual(entry["exception.message"], "bad")

    def test_reconfigure_no_duplicate_handlers(self):
        configure_logging(level="INFO", stream=self.stream)
        self.assertEqual(len(logging.getLogger("otp_pipeline").handlers), 1)


class TestRunLogger(_LoggingCase):

    def test_workflow_events(self):
        run = RunLogger(workflow="batch_login", run_id="r1")
        run.on_workflow_start(count=2)
        run.on_item_success("081122334455", round_no=1)
        run.on_item_failure("081222334455", "Login failed", round_no=1)
        run.on_round_end(1, 1, 1, 2.5)
        run.on_transition(7, "pending", "waiting")
        run.on_workflow_end(1, 1, 3.0)

        entries = self.lines()
        self.assertEqual([e["action"] for e in entries], [
            "workflow_start", "item_success", "item_failure",
            "round_end", "transition", "workflow_end",
        ])
        for e in entries:
            self.assertEqual(e["run_id"], "r1")
            self.assertEqual(e["workflow"], "batch_login")
        self.assertEqual(entries[2]["level"], "WARNING")
        self.assertEqual(entries[2]["error"], "Login failed")
        self.assertEqual(entries[3]["elapsed_s"], 2.5)
        self.assertEqual(entries[4]["to_status"], "waiting")

    def test_pending_hidden_at_info(self):
        RunLogger(workflow="check_otp").on_item_pending("081122334455")
        self.assertEqual(self.lines(), [])

    def test_run_ids_unique(self):
        self.assertNotEqual(generate_run_id(), generate_run_id())
        self.assertNotEqual(RunLogger().run_id, RunLogger().run_id)


class TestDebugLevel(_LoggingCase):

    level = "DEBUG"

    def test_pending_shown_at_debug(self):
        RunLogger(workflow="check_otp").on_item_pending("081122334455", record_id=3)
        entry = self.lines()[0]
        self.assertEqual(entry["action"], "item_pending")
        self.assertEqual(entry["record_id"], 3)


if __name__ == "__main__":
    unittest.main()
