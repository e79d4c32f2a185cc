"""
OTP Pipeline — Batch Orchestrator Tests

Every workflow against fake gateways, an in-memory store, a fake clock
and a sleep function that only advances that clock.

Tests:
  - create: provider/registration failures leave no record, bounds enforced
  - send_otp / check_otp: PENDING → WAITING → COMPLETED, failures leave state
  - check_otp_retry: rounds, interval, early stop, "OTP found on retry k"
  - expiry is re-evaluated before acting on a WAITING record
  - summary counts are per record: succeeded + failed + skipped + expired == total
  - batch_login: retry rounds, cohort reconciliation, LOGIN records, exports
  - auto_complete chains the three workflows
"""

import json
import os
import shutil
import sys
import tempfile
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from core.config import Settings
from core.exceptions import LoginError, NoOtpYet, ProviderError, RegistrationError, ValidationError
from core.providers import AcquiredNumber
from pipeline.runtime import BatchOrchestrator
from pipeline.store import InMemoryRecordStore
from pipeline.types import RecordStatus

from fakes import FakeClock, FakeGateway, FakeProvider

A, B, C = "081122334455", "081222334455", "081322334455"


class _OrchestratorCase(unittest.TestCase):

    pacing: dict = {}

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.settings = Settings.from_config({
            "storage": {"export_dir": self.tmpdir, "backup_dir": self.tmpdir},
            "pacing": self.pacing,
        })
        self.clock = FakeClock()
        self.store = InMemoryRecordStore()
        self.provider = FakeProvider()
        self.gateway = FakeGateway()

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def orchestrator(self):
        return BatchOrchestrator(
            self.store, self.provider, self.gateway, settings=self.settings,
            sleep_fn=self.clock.sleep, clock=self.clock, verbose=False,
        )

    def waiting_record(self, orch, phone, order_id):
        rec = orch.lifecycle.create_pending(phone, order_id)
        self.clock.now += 1
        return orch.lifecycle.mark_waiting(rec.id)


# ═══════════════════════════════════════════════════════════════════
# Create
# ═══════════════════════════════════════════════════════════════════

class TestCreate(_OrchestratorCase):

    def test_two_provider_failures_one_success(self):
        self.provider.acquire = [
            ProviderError("order failed: stock empty"),
            AcquiredNumber("o2", A),
            ProviderError("transport error"),
        ]
        summary = self.orchestrator().create(3)

        self.assertEqual((summary.total, summary.succeeded, summary.failed), (3, 1, 2))
        records = self.store.read_all()
        self.assertEqual(len(records), 1)
        self.assertEqual(records[0].status, RecordStatus.PENDING)
        self.assertEqual(records[0].phone, A)
        self.assertEqual(records[0].order_id, "o2")

    def test_registration_failure_leaves_no_record(self):
        self.provider.acquire = [AcquiredNumber("o1", A), AcquiredNumber("o2", B)]
        self.gateway.register_errors = [RegistrationError("form rejected"), None]
        summary = self.orchestrator().create(2)
        self.assertEqual(summary.succeeded, 1)
        self.assertEqual(summary.results[0]["error"], "form rejected")
        self.assertEqual([r.phone for r in self.store.read_all()], [B])

    def test_pacing_between_items(self):
        self.provider.acquire = [AcquiredNumber(f"o{i}", p) for i, p in enumerate([A, B, C])]
        self.orchestrator().create(3)
        self.assertEqual(self.clock.sleeps, [1.0, 1.0])

    def test_count_bounds(self):
        orch = self.orchestrator()
        for n in (0, 51, -1, "3", True):
            with self.assertRaises(ValidationError):
                orch.create(n)
        self.assertEqual(self.gateway.registered, [])

    def test_generated_registration_data(self):
        self.provider.acquire = [AcquiredNumber("o1", A)]
        self.orchestrator().create(1)
        data = self.gateway.registered[0]
        self.assertEqual(data.phone, A)
        self.assertEqual(data.password, "@Facebook20")
        self.assertRegex(data.email, r"^[a-z0-9]{15}@gmail\.com$")
        self.assertEqual(self.store.read_all()[0].email, data.email)


class TestCreateWithEmails(_OrchestratorCase):

    def test_emails_used_in_order(self):
        self.provider.acquire = [AcquiredNumber("o1", A), AcquiredNumber("o2", B)]
        summary = self.orchestrator().create(2, emails=["one@x.com", " two@x.com "])
        self.assertEqual(summary.workflow, "create_with_emails")
        self.assertEqual([d.email for d in self.gateway.registered], ["one@x.com", "two@x.com"])

    def test_email_count_mismatch(self):
        with self.assertRaises(ValidationError):
            self.orchestrator().create(2, emails=["one@x.com"])

    def test_odd_email_still_used(self):
        self.provider.acquire = [AcquiredNumber("o1", A)]
        with self.assertLogs("otp_pipeline.runtime", level="WARNING"):
            self.orchestrator().create(1, emails=["not-an-email"])
        self.assertEqual(self.gateway.registered[0].email, "not-an-email")


# ═══════════════════════════════════════════════════════════════════
# Send OTP / Check OTP
# ═══════════════════════════════════════════════════════════════════

class TestSendOtp(_OrchestratorCase):

    def test_pending_to_waiting_oldest_first(self):
        orch = self.orchestrator()
        first = orch.lifecycle.create_pending(A, "o1")
        self.clock.now += 5
        second = orch.lifecycle.create_pending(B, "o2")
        self.gateway.logins = {B: [LoginError("Login failed")]}

        summary = orch.send_otp()

        self.assertEqual([c[0] for c in self.gateway.login_calls], [A, B])
        self.assertEqual((summary.succeeded, summary.failed), (1, 1))
        self.assertEqual(self.store.get(first.id).status, RecordStatus.WAITING)
        self.assertEqual(self.store.get(second.id).status, RecordStatus.PENDING)
        self.assertEqual(self.clock.sleeps, [1.0])

    def test_nothing_pending(self):
        summary = self.orchestrator().send_otp()
        self.assertEqual(summary.total, 0)
        self.assertEqual(summary.message, "No pending records")
        self.assertEqual(self.gateway.login_calls, [])


class TestCheckOtp(_OrchestratorCase):

    def test_outcomes(self):
        orch = self.orchestrator()
        ra = self.waiting_record(orch, A, "o1")
        rb = self.waiting_record(orch, B, "o2")
        rc = self.waiting_record(orch, C, "o3")
        self.provider.otps = {"o1": ["482913"], "o3": [ProviderError("HTTP 502")]}

        summary = orch.check_otp()

        self.assertEqual((summary.succeeded, summary.failed, summary.skipped), (1, 1, 1))
        done = self.store.get(ra.id)
        self.assertEqual(done.status, RecordStatus.COMPLETED)
        self.assertEqual(done.details, "OTP: 482913")
        self.assertEqual(self.store.get(rb.id).status, RecordStatus.WAITING)
        self.assertEqual(self.store.get(rc.id).status, RecordStatus.WAITING)
        self.assertEqual(self.clock.sleeps, [0.5, 0.5])

    def test_expired_records_not_fetched(self):
        orch = self.orchestrator()
        rec = self.waiting_record(orch, A, "o1")
        self.clock.now += 601
        summary = orch.check_otp()
        self.assertEqual(summary.total, 0)
        self.assertEqual(self.provider.fetch_calls, [])
        self.assertEqual(self.store.get(rec.id).status, RecordStatus.EXPIRED)


class TestExpiryDuringBatch(_OrchestratorCase):

    pacing = {"check_otp_item_delay": 700}

    def test_record_expiring_mid_batch_is_skipped(self):
        orch = self.orchestrator()
        self.waiting_record(orch, A, "o1")
        late = self.waiting_record(orch, B, "o2")
        self.provider.otps = {"o1": ["1111"], "o2": ["2222"]}

        summary = orch.check_otp()

        self.assertEqual(self.provider.fetch_calls, ["o1"])
        self.assertEqual(self.store.get(late.id).status, RecordStatus.EXPIRED)
        self.assertEqual((summary.succeeded, summary.skipped, summary.expired), (1, 0, 1))
        self.assertIn("1 expired", summary.message)


class TestCheckOtpRetry(_OrchestratorCase):

    def test_found_on_second_round(self):
        orch = self.orchestrator()
        rec = self.waiting_record(orch, A, "o1")
        self.provider.otps = {"o1": [NoOtpYet("wait"), "7391"]}

        summary = orch.check_otp_retry()

        self.assertEqual(summary.succeeded, 1)
        self.assertEqual(len(summary.rounds), 2)
        self.assertEqual(self.clock.sleeps, [20.0])
        self.assertEqual(self.store.get(rec.id).details, "OTP found on retry 2: 7391")
        self.assertEqual(orch.completed_otps(), [{"phone": A, "otp": "7391"}])

    def test_gives_up_after_five_rounds(self):
        orch = self.orchestrator()
        self.waiting_record(orch, A, "o1")
        summary = orch.check_otp_retry()
        self.assertEqual(len(summary.rounds), 5)
        self.assertEqual(self.clock.sleeps.count(20.0), 4)
        self.assertEqual(summary.skipped, 1)
        self.assertEqual(len(self.provider.fetch_calls), 5)

    def test_repeated_provider_errors_count_once(self):
        orch = self.orchestrator()
        rec = self.waiting_record(orch, A, "o1")
        self.provider.otps = {"o1": [ProviderError("HTTP 502")]}

        summary = orch.check_otp_retry()

        self.assertEqual((summary.total, summary.failed, summary.skipped), (1, 1, 0))
        self.assertEqual(sum(r["errors"] for r in summary.rounds), 5)
        self.assertEqual(summary.results, [{
            "phone": A, "record_id": rec.id, "status": "failed", "error": "HTTP 502",
        }])

    def test_error_then_pending_is_still_waiting(self):
        orch = self.orchestrator()
        self.waiting_record(orch, A, "o1")
        self.provider.otps = {"o1": [ProviderError("HTTP 502"), NoOtpYet("wait")]}

        summary = orch.check_otp_retry()

        self.assertEqual((summary.failed, summary.skipped), (0, 1))

    def test_nothing_waiting(self):
        summary = self.orchestrator().check_otp_retry()
        self.assertEqual(summary.rounds, [])
        self.assertEqual(self.provider.fetch_calls, [])

    def test_item_delay_inside_round(self):
        orch = self.orchestrator()
        self.waiting_record(orch, A, "o1")
        self.waiting_record(orch, B, "o2")
        self.provider.otps = {"o1": ["1111"], "o2": ["2222"]}
        orch.check_otp_retry()
        self.assertEqual(self.clock.sleeps, [0.3])


# ═══════════════════════════════════════════════════════════════════
# Batch login
# ═══════════════════════════════════════════════════════════════════

class TestBatchLogin(_OrchestratorCase):

    def test_round_two_success_moves_to_success_cohort(self):
        self.gateway.logins = {B: [LoginError("Login failed")]}
        summary = self.orchestrator().batch_login([A, B], password="secret99")

        self.assertEqual((summary.succeeded, summary.failed), (2, 0))
        self.assertEqual(summary.results, [
            {"phone": A, "status": "success"},
            {"phone": B, "status": "success"},
        ])
        self.assertEqual(len(summary.rounds), 2)
        self.assertIn("success", summary.artifacts)
        self.assertNotIn("failure", summary.artifacts)
        self.assertIn(5.0, self.clock.sleeps)
        logins = [r for r in self.store.read_all() if r.status == RecordStatus.LOGIN]
        self.assertEqual(sorted(r.phone for r in logins), [A, B])
        self.assertTrue(all(p == "secret99" for _, p in self.gateway.login_calls))

    def test_persistent_failure_keeps_latest_error(self):
        self.gateway.logins = {B: [LoginError("e1"), LoginError("e2"), LoginError("e3")]}
        summary = self.orchestrator().batch_login([A, B])

        self.assertEqual(len(summary.rounds), 3)
        self.assertEqual(summary.results[1], {"phone": B, "status": "failed", "error": "e3"})
        with open(summary.artifacts["failure"]) as f:
            failure = json.load(f)
        self.assertEqual(failure["total"], 1)
        self.assertEqual(failure["results"][0]["error"], "e3")
        self.assertEqual(self.clock.sleeps.count(5.0), 2)

    def test_every_phone_in_exactly_one_cohort(self):
        self.gateway.logins = {A: [LoginError("x"), LoginError("y"), LoginError("z")],
                               C: [LoginError("x")]}
        summary = self.orchestrator().batch_login([A, B, C])
        phones = [r["phone"] for r in summary.results]
        self.assertEqual(phones, [A, B, C])
        self.assertEqual(summary.succeeded + summary.failed, 3)

    def test_default_password(self):
        self.orchestrator().batch_login([A], password="")
        self.assertEqual(self.gateway.login_calls, [(A, "@Facebook20")])

    def test_inputs_normalized_and_deduplicated(self):
        summary = self.orchestrator().batch_login(["+6281122334455", A, "0812x"])
        self.assertEqual(summary.total, 1)
        self.assertEqual(summary.skipped, 1)
        self.assertEqual(self.gateway.login_calls, [(A, "@Facebook20")])

    def test_empty_input(self):
        with self.assertRaises(ValidationError):
            self.orchestrator().batch_login([])
        with self.assertRaises(ValidationError):
            self.orchestrator().batch_login(["nope", "0812x"])
        self.assertEqual(self.gateway.login_calls, [])

    def test_no_retry_round_when_all_succeed(self):
        summary = self.orchestrator().batch_login([A, B])
        self.assertEqual(len(summary.rounds), 1)
        self.assertNotIn(5.0, self.clock.sleeps)
        self.assertIn("0 retry round(s)", summary.message)


# ═══════════════════════════════════════════════════════════════════
# Auto-complete and store views
# ═══════════════════════════════════════════════════════════════════

class TestAutoComplete(_OrchestratorCase):

    def test_full_chain(self):
        self.provider.acquire = [AcquiredNumber("o1", A)]
        self.provider.otps = {"o1": ["5521"]}
        summary = self.orchestrator().auto_complete(1)

        self.assertEqual(summary.succeeded, 1)
        self.assertEqual([r["stage"] for r in summary.rounds],
                         ["create", "send_otp", "check_otp_retry"])
        self.assertIn(5.0, self.clock.sleeps)
        self.assertIn(10.0, self.clock.sleeps)
        self.assertEqual(self.store.read_all()[0].status, RecordStatus.COMPLETED)

    def test_counts_cover_only_this_run(self):
        orch = self.orchestrator()
        for phone, order in ((B, "old1"), (C, "old2"), ("081422334455", "old3")):
            self.waiting_record(orch, phone, order)
        self.provider.acquire = [AcquiredNumber("o1", A)]
        self.provider.otps = {"o1": ["5521"]}

        summary = orch.auto_complete(1)

        self.assertEqual(
            (summary.total, summary.succeeded, summary.failed, summary.skipped),
            (1, 1, 0, 0),
        )
        self.assertEqual([r["phone"] for r in summary.results], [A])

    def test_login_failure_counts_as_failed(self):
        self.provider.acquire = [AcquiredNumber("o1", A), AcquiredNumber("o2", B)]
        self.provider.otps = {"o2": ["5521"]}
        self.gateway.logins = {A: [LoginError("Login failed")]}

        summary = self.orchestrator().auto_complete(2)

        self.assertEqual((summary.succeeded, summary.failed, summary.skipped), (1, 1, 0))

    def test_stops_when_nothing_created(self):
        self.provider.acquire = [ProviderError("down")]
        summary = self.orchestrator().auto_complete(1)
        self.assertEqual(len(summary.rounds), 1)
        self.assertEqual(self.gateway.login_calls, [])


class TestStoreViews(_OrchestratorCase):

    def test_status(self):
        orch = self.orchestrator()
        for i in range(7):
            orch.lifecycle.create_pending(f"08112233445{i}", f"o{i}")
            self.clock.now += 1
        status = orch.status()
        self.assertEqual(status["counts"]["pending"], 7)
        self.assertEqual(status["counts"]["total"], 7)
        self.assertEqual(len(status["recent"]), 5)
        self.assertEqual(status["recent"][0]["phone"], "081122334456")

    def test_list_oldest_first_with_age(self):
        orch = self.orchestrator()
        orch.lifecycle.create_pending(A, "o1")
        self.clock.now += 120
        orch.lifecycle.create_pending(B, "o2")
        rows = orch.list_records()
        self.assertEqual([r["phone"] for r in rows], [A, B])
        self.assertEqual(rows[0]["ageMinutes"], 2)
        self.assertEqual(rows[1]["ageMinutes"], 0)

    def test_clear(self):
        orch = self.orchestrator()
        orch.lifecycle.create_pending(A, "o1")
        path = orch.clear()
        self.assertTrue(os.path.basename(path).startswith("logs_backup_"))
        self.assertEqual(self.store.read_all(), [])
        with open(path) as f:
            self.assertEqual(len(json.load(f)), 1)


if __name__ == "__main__":
    unittest.main()
