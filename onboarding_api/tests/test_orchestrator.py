import threading
from dataclasses import replace
from unittest import TestCase

from onboarding_api.errors import (
    ConflictError,
    NotFoundError,
    OnboardingInProgress,
    OperatorActionRequired,
    PermanentError,
    ProvisioningFailed,
    TransientError,
    ValidationError,
    VersionConflict,
)
from onboarding_api.ledger import DynamoLedger, OnboardingRecord, OnboardingStatus
from onboarding_api.models import DeprovisionRequest, OnboardRequest
from onboarding_api.orchestrator import OnboardingOrchestrator

from .fakes import (
    TEST_SETTINGS,
    FakeArchive,
    FakeDynamoClient,
    FakeIdentityStore,
    FakePolicyStore,
    FakeRegistry,
    InMemoryLedger,
    arn_for,
)

NOW = 1_700_000_000


def sensors_request(serial: str = "SN-001", caller: str = "ops@example.com") -> OnboardRequest:
    return OnboardRequest(
        device_group="sensors",
        serial_number=serial,
        topic_namespace=f"data/sensors/{serial}",
        caller_identity=caller,
    )


class OrchestratorTestCase(TestCase):
    settings = TEST_SETTINGS

    def setUp(self):
        self.ledger = InMemoryLedger()
        self.identity = FakeIdentityStore()
        self.policies = FakePolicyStore()
        self.registry = FakeRegistry()
        self.archive = FakeArchive()
        self.now = NOW
        self.orchestrator = self.make_orchestrator(self.ledger)

    def make_orchestrator(self, ledger, **kwargs):
        return OnboardingOrchestrator(
            ledger=ledger,
            identity=self.identity,
            policies=self.policies,
            registry=self.registry,
            archive=self.archive,
            settings=kwargs.pop("settings", self.settings),
            clock=lambda: self.now,
            **kwargs,
        )

    def assert_no_resources(self, serial: str = "SN-001"):
        self.assertEqual(self.identity.active(), set())
        self.assertEqual(self.policies.attachments, set())
        self.assertNotIn(f"thing-{serial}", self.registry.things)


class OnboardTests(OrchestratorTestCase):
    def test_example_scenario(self):
        result = self.orchestrator.onboard(sensors_request())

        self.assertEqual(result.identity_id, "id-001")
        self.assertEqual(result.policy_name, "pol-sensors-data")
        self.assertEqual(result.registry_entry_name, "thing-SN-001")
        self.assertIn("BEGIN CERTIFICATE", result.certificate)
        self.assertIn("PRIVATE KEY", result.private_key_material)
        self.assertFalse(result.replayed)
        self.assertEqual(result.endpoint, "example-ats.iot.us-east-1.amazonaws.com")

        record = self.ledger.get("sensors", "SN-001")
        self.assertEqual(record.status, OnboardingStatus.COMPLETE)
        self.assertEqual(record.identity_id, "id-001")
        self.assertEqual(record.policy_name, "pol-sensors-data")
        self.assertEqual(record.registry_entry_name, "thing-SN-001")
        self.assertEqual(record.requested_by, "ops@example.com")
        self.assertIsNone(record.lease_owner)
        self.assertEqual(
            self.ledger.statuses(),
            ["PENDING", "IDENTITY_ISSUED", "POLICY_ATTACHED", "REGISTERED", "COMPLETE"],
        )
        self.assertIn(("pol-sensors-data", arn_for("id-001")), self.policies.attachments)
        self.assertEqual(self.registry.principals["thing-SN-001"], {arn_for("id-001")})

    def test_private_key_never_written_to_ledger(self):
        result = self.orchestrator.onboard(sensors_request())
        for record in self.ledger.writes:
            self.assertNotIn(result.private_key_material, repr(record))
            self.assertNotIn("PRIVATE KEY", repr(record.to_public()))
        self.assertNotIn("PRIVATE KEY", repr(result))

    def test_replay_returns_same_entry_without_key_material(self):
        first = self.orchestrator.onboard(sensors_request())
        second = self.orchestrator.onboard(sensors_request())

        self.assertTrue(second.replayed)
        self.assertEqual(second.identity_id, first.identity_id)
        self.assertEqual(second.registry_entry_name, "thing-SN-001")
        self.assertIsNone(second.private_key_material)
        self.assertIsNone(second.certificate)
        self.assertEqual(self.identity.called("issue_credential"), 1)

    def test_certificate_archived_on_completion(self):
        self.orchestrator.onboard(sensors_request())
        self.assertIn("test/certificates/sensors/SN-001/id-001.pem.crt", self.archive.objects)

    def test_archive_failure_does_not_fail_onboarding(self):
        self.archive.fail_on["store"] = TransientError("s3 down")
        result = self.orchestrator.onboard(sensors_request())
        self.assertEqual(self.ledger.get("sensors", "SN-001").status, OnboardingStatus.COMPLETE)
        self.assertIsNotNone(result.private_key_material)

    def test_endpoint_described_when_not_configured(self):
        orchestrator = self.make_orchestrator(self.ledger, settings=replace(self.settings, iot_data_endpoint=""))
        result = orchestrator.onboard(sensors_request())
        self.assertEqual(result.endpoint, "described-ats.iot.us-east-1.amazonaws.com")

    def test_invalid_request_touches_nothing(self):
        bad = [
            OnboardRequest("sensors", "SN 001", "data/sensors/SN-001"),
            OnboardRequest("", "SN-001", "data/sensors/SN-001"),
            OnboardRequest("sensors", "SN-001", "data/sensors/#"),
            OnboardRequest("sensors", "SN-001", "other/sensors/SN-001"),
            OnboardRequest("sensors", "SN-001", "data/meters/SN-001"),
        ]
        for request in bad:
            with self.subTest(request=request):
                with self.assertRaises(ValidationError):
                    self.orchestrator.onboard(request)
        self.assertEqual(self.identity.calls, [])
        self.assertEqual(self.ledger.writes, [])


class CompensationTests(OrchestratorTestCase):
    def test_failure_at_each_forward_step_leaves_no_resources(self):
        injections = [
            ("identity", "issue_credential"),
            ("policies", "ensure_policy"),
            ("policies", "attach_policy"),
            ("registry", "create_entry"),
            ("registry", "attach_principal"),
            ("ledger", OnboardingStatus.COMPLETE),
        ]
        for target, operation in injections:
            with self.subTest(step=operation):
                self.setUp()
                error = PermanentError(f"{operation} rejected")
                if target == "ledger":
                    self.ledger.fail_on_status[operation] = error
                else:
                    getattr(self, target).fail_on[operation] = error

                with self.assertRaises(ProvisioningFailed) as ctx:
                    self.orchestrator.onboard(sensors_request())

                self.assertEqual(ctx.exception.reference, "sensors/SN-001")
                self.assert_no_resources()
                self.assertEqual(self.policies.policies, {})
                record = self.ledger.get("sensors", "SN-001")
                self.assertEqual(record.status, OnboardingStatus.FAILED)
                self.assertIn("rejected", record.last_error)
                self.assertFalse(record.has_resources())
                self.assertIsNone(record.lease_owner)

    def test_compensation_runs_in_reverse_order(self):
        self.ledger.fail_on_status[OnboardingStatus.COMPLETE] = PermanentError("ledger rejected")
        with self.assertRaises(ProvisioningFailed):
            self.orchestrator.onboard(sensors_request())

        undo = [
            ("registry", call[0]) for call in self.registry.calls if call[0] in {"detach_principal", "delete_entry"}
        ]
        self.assertEqual(undo, [("registry", "detach_principal"), ("registry", "delete_entry")])
        self.assertEqual(self.policies.calls[-2:], [
            ("detach_policy", "pol-sensors-data", arn_for("id-001")),
            ("delete_policy_if_unreferenced", "pol-sensors-data"),
        ])
        self.assertEqual(self.identity.calls[-1], ("revoke_credential", "id-001"))

    def test_exhausted_transient_failure_compensates(self):
        self.registry.fail_on["attach_principal"] = TransientError("throttled")
        with self.assertRaises(ProvisioningFailed):
            self.orchestrator.onboard(sensors_request())
        self.assert_no_resources()

    def test_failed_record_can_be_onboarded_again(self):
        self.policies.fail_on["attach_policy"] = PermanentError("rejected")
        with self.assertRaises(ProvisioningFailed):
            self.orchestrator.onboard(sensors_request())
        del self.policies.fail_on["attach_policy"]

        result = self.orchestrator.onboard(sensors_request())

        self.assertEqual(result.identity_id, "id-002")
        record = self.ledger.get("sensors", "SN-001")
        self.assertEqual(record.status, OnboardingStatus.COMPLETE)
        self.assertIsNone(record.last_error)

    def test_shared_policy_survives_compensation(self):
        self.orchestrator.onboard(sensors_request("SN-001"))
        self.registry.fail_on["attach_principal"] = PermanentError("rejected")

        with self.assertRaises(ProvisioningFailed):
            self.orchestrator.onboard(sensors_request("SN-002"))

        self.assertIn("pol-sensors-data", self.policies.policies)
        self.assertEqual(self.policies.attachments, {("pol-sensors-data", arn_for("id-001"))})
        self.assertEqual(self.identity.active(), {"id-001"})
        self.assertFalse(self.ledger.get("sensors", "SN-002").has_resources())

    def test_registry_entry_carries_topic_namespace(self):
        self.orchestrator.onboard(sensors_request("SN-001"))
        self.orchestrator.onboard(sensors_request("SN-002"))
        self.assertEqual(self.registry.namespaces["thing-SN-001"], "data/sensors/SN-001")
        self.assertEqual(self.registry.namespaces["thing-SN-002"], "data/sensors/SN-002")
        self.assertEqual(set(self.policies.policies), {"pol-sensors-data"})

    def test_registry_name_owned_by_other_group_is_not_deleted(self):
        self.orchestrator.onboard(sensors_request("SN-001"))

        with self.assertRaises(ProvisioningFailed):
            self.orchestrator.onboard(OnboardRequest("meters", "SN-001", "data/meters/SN-001"))

        self.assertEqual(self.registry.things["thing-SN-001"], ("sensors", "SN-001"))
        self.assertEqual(self.registry.principals["thing-SN-001"], {arn_for("id-001")})
        self.assertEqual(self.identity.active(), {"id-001"})
        self.assertNotIn("pol-meters-data", self.policies.policies)
        record = self.ledger.get("meters", "SN-001")
        self.assertEqual(record.status, OnboardingStatus.FAILED)
        self.assertIn("belongs to sensors/SN-001", record.last_error)

    def test_compensation_failure_requires_operator(self):
        self.registry.fail_on["attach_principal"] = PermanentError("rejected")
        self.identity.fail_on["revoke_credential"] = PermanentError("revoke rejected")

        with self.assertRaises(ProvisioningFailed):
            self.orchestrator.onboard(sensors_request())

        record = self.ledger.get("sensors", "SN-001")
        self.assertEqual(record.status, OnboardingStatus.FAILED)
        self.assertEqual(record.identity_id, "id-001")
        self.assertIsNone(record.registry_entry_name)
        self.assertIsNone(record.policy_name)
        self.assertIn("compensation failed: identity", record.last_error)

        with self.assertRaises(OperatorActionRequired):
            self.orchestrator.onboard(sensors_request())
        self.assertEqual(self.identity.called("issue_credential"), 1)

    def test_cleanup_finishes_failed_compensation(self):
        self.registry.fail_on["attach_principal"] = PermanentError("rejected")
        self.identity.fail_on["revoke_credential"] = PermanentError("revoke rejected")
        with self.assertRaises(ProvisioningFailed):
            self.orchestrator.onboard(sensors_request())

        with self.assertRaises(OperatorActionRequired):
            self.orchestrator.cleanup("sensors", "SN-001")

        self.identity.fail_on.clear()
        self.registry.fail_on.clear()
        record = self.orchestrator.cleanup("sensors", "SN-001")

        self.assertEqual(record.status, OnboardingStatus.FAILED)
        self.assertFalse(record.has_resources())
        self.assert_no_resources()
        self.assertEqual(self.orchestrator.onboard(sensors_request()).identity_id, "id-002")

    def test_cleanup_rejects_non_failed_records(self):
        self.orchestrator.onboard(sensors_request())
        with self.assertRaises(ConflictError):
            self.orchestrator.cleanup("sensors", "SN-001")
        with self.assertRaises(NotFoundError):
            self.orchestrator.cleanup("sensors", "SN-404")


class ConcurrencyTests(OrchestratorTestCase):
    def test_concurrent_requests_for_one_device(self):
        parties = 6

        class BarrierLedger(InMemoryLedger):
            barrier = threading.Barrier(parties)

            def get(self, device_group, serial_number):
                record = super().get(device_group, serial_number)
                self.barrier.wait(timeout=5)
                return record

        ledger = BarrierLedger()
        orchestrator = self.make_orchestrator(ledger)
        outcomes = []
        lock = threading.Lock()

        def worker():
            try:
                result = orchestrator.onboard(sensors_request())
                outcome = ("ok", result.identity_id)
            except OnboardingInProgress:
                outcome = ("in_progress", None)
            with lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=worker) for _ in range(parties)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        self.assertEqual(len(outcomes), parties)
        self.assertEqual(sum(1 for kind, _ in outcomes if kind == "ok"), 1)
        self.assertEqual(sum(1 for kind, _ in outcomes if kind == "in_progress"), parties - 1)
        self.assertEqual(self.identity.called("issue_credential"), 1)
        self.assertEqual(ledger.records[("sensors", "SN-001")].status, OnboardingStatus.COMPLETE)

    def test_live_lease_reports_in_progress(self):
        self.ledger.put(
            OnboardingRecord(
                device_group="sensors",
                serial_number="SN-001",
                status=OnboardingStatus.PENDING,
                topic_namespace="data/sensors/SN-001",
                lease_owner="someone-else",
                lease_expires_at=NOW + 60,
            )
        )
        with self.assertRaises(OnboardingInProgress):
            self.orchestrator.onboard(sensors_request())
        self.assertEqual(self.identity.calls, [])

    def test_expired_lease_resumes_and_reuses_identity(self):
        self.identity.certificates["id-900"] = "ACTIVE"
        self.ledger.put(
            OnboardingRecord(
                device_group="sensors",
                serial_number="SN-001",
                status=OnboardingStatus.IDENTITY_ISSUED,
                identity_id="id-900",
                identity_arn=arn_for("id-900"),
                topic_namespace="data/sensors/SN-001",
                lease_owner="crashed-run",
                lease_expires_at=NOW - 1,
            )
        )

        result = self.orchestrator.onboard(sensors_request())

        self.assertEqual(self.identity.called("issue_credential"), 0)
        self.assertEqual(result.identity_id, "id-900")
        self.assertIn("id-900", result.certificate)
        self.assertIsNone(result.private_key_material)
        record = self.ledger.get("sensors", "SN-001")
        self.assertEqual(record.status, OnboardingStatus.COMPLETE)
        self.assertEqual(self.registry.principals["thing-SN-001"], {arn_for("id-900")})

    def test_lost_ownership_revokes_unrecorded_credential(self):
        self.ledger.fail_on_status[OnboardingStatus.IDENTITY_ISSUED] = VersionConflict("taken over")

        with self.assertRaises(OnboardingInProgress):
            self.orchestrator.onboard(sensors_request())

        self.assertEqual(self.identity.calls[-1], ("revoke_credential", "id-001"))
        self.assertEqual(self.identity.active(), set())
        self.assertEqual(self.ledger.get("sensors", "SN-001").status, OnboardingStatus.PENDING)


class LostLedgerResponseTests(OrchestratorTestCase):
    def setUp(self):
        super().setUp()
        self.dynamodb = FakeDynamoClient()
        self.orchestrator = self.make_orchestrator(DynamoLedger(self.dynamodb, self.settings, sleep=lambda _: None))

    def stored_status(self):
        return self.dynamodb.items[("sensors", "SN-001")]["status"]["S"]

    def test_completion_write_applied_but_unacknowledged(self):
        self.dynamodb.lose_response_for.add("COMPLETE")

        result = self.orchestrator.onboard(sensors_request())

        self.assertEqual(result.identity_id, "id-001")
        self.assertIn("PRIVATE KEY", result.private_key_material)
        self.assertEqual(self.stored_status(), "COMPLETE")
        self.assertEqual(self.identity.active(), {"id-001"})

    def test_identity_write_applied_but_unacknowledged(self):
        self.dynamodb.lose_response_for.add("IDENTITY_ISSUED")

        result = self.orchestrator.onboard(sensors_request())

        self.assertEqual(result.identity_id, "id-001")
        self.assertEqual(self.identity.called("revoke_credential"), 0)
        self.assertEqual(self.identity.active(), {"id-001"})
        self.assertEqual(self.stored_status(), "COMPLETE")
        self.assertEqual(self.registry.principals["thing-SN-001"], {arn_for("id-001")})

    def test_deprovision_delete_applied_but_unacknowledged(self):
        self.orchestrator.onboard(sensors_request())
        self.dynamodb.lose_response_for.add("DELETE")

        self.orchestrator.deprovision(DeprovisionRequest("sensors", "SN-001"))

        self.assertEqual(self.dynamodb.items, {})


class DeprovisionTests(OrchestratorTestCase):
    def test_round_trip_then_fresh_onboarding(self):
        self.orchestrator.onboard(sensors_request())

        self.orchestrator.deprovision(DeprovisionRequest("sensors", "SN-001"))

        self.assertIsNone(self.ledger.get("sensors", "SN-001"))
        self.assert_no_resources()
        self.assertEqual(self.identity.certificates, {})
        self.assertEqual(self.policies.policies, {})
        self.assertEqual(self.archive.objects, {})
        self.assertIn("DEPROVISIONING", self.ledger.statuses())

        again = self.orchestrator.onboard(sensors_request())
        self.assertFalse(again.replayed)
        self.assertEqual(again.identity_id, "id-002")
        self.assertIsNotNone(again.private_key_material)

    def test_deprovision_is_idempotent(self):
        self.orchestrator.deprovision(DeprovisionRequest("sensors", "SN-404"))
        self.orchestrator.onboard(sensors_request())
        self.orchestrator.deprovision(DeprovisionRequest("sensors", "SN-001"))
        self.orchestrator.deprovision(DeprovisionRequest("sensors", "SN-001"))
        self.assertEqual(self.identity.called("revoke_credential"), 1)

    def test_shared_policy_is_not_deleted(self):
        self.orchestrator.onboard(sensors_request("SN-001"))
        self.orchestrator.onboard(sensors_request("SN-002"))

        self.orchestrator.deprovision(DeprovisionRequest("sensors", "SN-001"))

        self.assertIn("pol-sensors-data", self.policies.policies)
        self.assertEqual(self.policies.attachments, {("pol-sensors-data", arn_for("id-002"))})
        self.assertIn(("delete_policy_if_unreferenced", "pol-sensors-data"), self.policies.calls)
        self.assertEqual(self.ledger.get("sensors", "SN-002").status, OnboardingStatus.COMPLETE)

    def test_deprovision_gated_on_complete(self):
        self.ledger.put(
            OnboardingRecord(
                device_group="sensors",
                serial_number="SN-001",
                status=OnboardingStatus.POLICY_ATTACHED,
                lease_owner="other",
                lease_expires_at=NOW + 60,
            )
        )
        with self.assertRaises(OnboardingInProgress):
            self.orchestrator.deprovision(DeprovisionRequest("sensors", "SN-001"))

        self.policies.fail_on["ensure_policy"] = PermanentError("rejected")
        with self.assertRaises(ProvisioningFailed):
            self.orchestrator.onboard(sensors_request("SN-002"))
        with self.assertRaises(ConflictError):
            self.orchestrator.deprovision(DeprovisionRequest("sensors", "SN-002"))

    def test_failed_deprovision_can_be_resumed(self):
        self.orchestrator.onboard(sensors_request())
        self.identity.fail_on["revoke_credential"] = TransientError("throttled")

        with self.assertRaises(ProvisioningFailed):
            self.orchestrator.deprovision(DeprovisionRequest("sensors", "SN-001"))

        record = self.ledger.get("sensors", "SN-001")
        self.assertEqual(record.status, OnboardingStatus.DEPROVISIONING)
        self.assertIsNone(record.registry_entry_name)
        self.assertIsNone(record.policy_name)
        self.assertEqual(record.identity_id, "id-001")
        self.assertIsNone(record.lease_owner)
        with self.assertRaises(OnboardingInProgress):
            self.orchestrator.onboard(sensors_request())

        self.identity.fail_on.clear()
        self.orchestrator.deprovision(DeprovisionRequest("sensors", "SN-001"))
        self.assertIsNone(self.ledger.get("sensors", "SN-001"))
        self.assertEqual(self.identity.certificates, {})


class OperatorTests(OrchestratorTestCase):
    def test_update_credential_status(self):
        self.orchestrator.onboard(sensors_request())
        self.orchestrator.update_credential_status("sensors", "SN-001", "inactive")
        self.assertEqual(self.identity.certificates["id-001"], "INACTIVE")
        self.orchestrator.update_credential_status("sensors", "SN-001", "ACTIVE")
        self.assertEqual(self.identity.certificates["id-001"], "ACTIVE")

    def test_update_credential_status_rejects_revoke_and_unknown_devices(self):
        self.orchestrator.onboard(sensors_request())
        with self.assertRaises(ValidationError):
            self.orchestrator.update_credential_status("sensors", "SN-001", "REVOKED")
        with self.assertRaises(NotFoundError):
            self.orchestrator.update_credential_status("sensors", "SN-404", "INACTIVE")

    def test_describe_and_list(self):
        self.orchestrator.onboard(sensors_request("SN-001"))
        self.orchestrator.onboard(sensors_request("SN-002"))
        self.assertEqual(self.orchestrator.describe("sensors", "SN-002").identity_id, "id-002")
        self.assertEqual(
            [record.serial_number for record in self.orchestrator.list_group("sensors")],
            ["SN-001", "SN-002"],
        )
        self.assertEqual(self.orchestrator.list_group("meters"), [])
