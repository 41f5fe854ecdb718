"""Device onboarding saga.

Provisioning a device touches three AWS IoT resources (certificate, policy
attachment, thing) that cannot be created in one transaction. The
orchestrator runs them as ordered steps, writes every state change to the
ledger with a version-conditional put, and on a failed step undoes the
completed steps in reverse order before marking the record FAILED.

A record that is not terminal carries a lease (owner + expiry). Another
request for the same device either sees the live lease and reports
"in progress", or finds it expired and resumes from the recorded state.
"""
import logging
import time
import uuid
from dataclasses import dataclass, replace
from typing import Callable, List, Optional

from .adapters.identity import IssuedCredential
from .errors import (
    CompensationFailure,
    ConflictError,
    NotFoundError,
    OnboardingError,
    OnboardingInProgress,
    OperatorActionRequired,
    ProvisioningFailed,
    ValidationError,
    VersionConflict,
)
from .ledger import OnboardingRecord, OnboardingStatus
from .models import DeprovisionRequest, OnboardRequest, OnboardResult
from .naming import policy_document_json, policy_name, thing_name, validate_device_group
from .settings import Settings

logger = logging.getLogger(__name__)

OPERATOR_STATUSES = {"ACTIVE", "INACTIVE"}


@dataclass
class _SagaRun:
    owner: str
    credential: Optional[IssuedCredential] = None
    policy_name: Optional[str] = None
    entry_name: Optional[str] = None


class OnboardingOrchestrator:
    def __init__(
        self,
        *,
        ledger,
        identity,
        policies,
        registry,
        settings: Settings,
        archive=None,
        clock: Callable[[], float] = time.time,
        new_owner: Callable[[], str] = lambda: uuid.uuid4().hex,
    ):
        self.ledger = ledger
        self.identity = identity
        self.policies = policies
        self.registry = registry
        self.archive = archive
        self.settings = settings
        self._clock = clock
        self._new_owner = new_owner

    # === Ledger helpers ===

    def _lease_until(self) -> int:
        return int(self._clock()) + int(self.settings.lease_seconds)

    def _save(self, record: OnboardingRecord) -> OnboardingRecord:
        return self.ledger.put(record)

    def _claim(self, record: OnboardingRecord, owner: str) -> OnboardingRecord:
        claimed = replace(record, lease_owner=owner, lease_expires_at=self._lease_until())
        try:
            return self._save(claimed)
        except VersionConflict as exc:
            raise OnboardingInProgress(f"onboarding already in progress for {record.key}") from exc

    def _advance(self, record: OnboardingRecord, status: OnboardingStatus, run: _SagaRun, **changes) -> OnboardingRecord:
        updated = record.advance(status, lease_owner=run.owner, lease_expires_at=self._lease_until(), **changes)
        saved = self._save(updated)
        logger.info("Onboarding group=%s serial=%s status=%s", record.device_group, record.serial_number, status.value)
        return saved

    # === Onboarding ===

    def onboard(self, request: OnboardRequest) -> OnboardResult:
        request = request.validated(self.settings.topic_root)
        group, serial = request.device_group, request.serial_number
        run = _SagaRun(owner=self._new_owner())
        record = self.ledger.get(group, serial)

        if record is not None and record.status == OnboardingStatus.COMPLETE:
            logger.info("Onboarding replay group=%s serial=%s", group, serial)
            return self._replay_result(record)

        if record is None or record.status == OnboardingStatus.DEPROVISIONED:
            fresh = OnboardingRecord(
                device_group=group,
                serial_number=serial,
                topic_namespace=request.topic_namespace,
                requested_by=request.caller_identity or None,
                version=record.version if record else 0,
            )
            record = self._claim(fresh, run.owner)
        elif record.status == OnboardingStatus.FAILED:
            if record.has_resources():
                raise OperatorActionRequired(
                    "previous onboarding left resources behind", reference=record.key
                )
            restarted = record.advance(
                OnboardingStatus.PENDING,
                topic_namespace=request.topic_namespace,
                requested_by=request.caller_identity or record.requested_by,
                last_error=None,
            )
            record = self._claim(restarted, run.owner)
        elif record.status == OnboardingStatus.DEPROVISIONING:
            raise OnboardingInProgress(f"deprovisioning in progress for {record.key}")
        else:
            if record.lease_active(self._clock()) and record.lease_owner != run.owner:
                raise OnboardingInProgress(f"onboarding already in progress for {record.key}")
            logger.info(
                "Resuming onboarding group=%s serial=%s from status=%s", group, serial, record.status.value
            )
            record = self._claim(record, run.owner)

        return self._run_forward(record, request, run)

    def _run_forward(self, record: OnboardingRecord, request: OnboardRequest, run: _SagaRun) -> OnboardResult:
        steps = {
            OnboardingStatus.PENDING: self._issue_identity,
            OnboardingStatus.IDENTITY_ISSUED: self._attach_policy,
            OnboardingStatus.POLICY_ATTACHED: self._register_entry,
            OnboardingStatus.REGISTERED: self._complete,
        }
        while record.status != OnboardingStatus.COMPLETE:
            step = steps[record.status]
            try:
                record = step(record, request, run)
            except VersionConflict as exc:
                self._abandon(record, run)
                raise OnboardingInProgress(f"onboarding already in progress for {record.key}") from exc
            except OnboardingError as exc:
                self._fail(record, run, step.__name__.lstrip("_"), exc)
                raise ProvisioningFailed(reference=record.key) from exc
        return self._completed_result(record, run)

    def _issue_identity(self, record: OnboardingRecord, request: OnboardRequest, run: _SagaRun) -> OnboardingRecord:
        run.credential = self.identity.issue_credential(thing_name(record.device_group, record.serial_number))
        return self._advance(
            record,
            OnboardingStatus.IDENTITY_ISSUED,
            run,
            identity_id=run.credential.identity_id,
            identity_arn=run.credential.identity_arn,
        )

    def _attach_policy(self, record: OnboardingRecord, request: OnboardRequest, run: _SagaRun) -> OnboardingRecord:
        namespace = record.topic_namespace or request.topic_namespace
        name = policy_name(record.device_group, namespace)
        self.policies.ensure_policy(name, policy_document_json())
        run.policy_name = name
        self.policies.attach_policy(name, record.identity_arn)
        return self._advance(record, OnboardingStatus.POLICY_ATTACHED, run, policy_name=name)

    def _register_entry(self, record: OnboardingRecord, request: OnboardRequest, run: _SagaRun) -> OnboardingRecord:
        name = thing_name(record.device_group, record.serial_number)
        namespace = record.topic_namespace or request.topic_namespace
        self.registry.create_entry(name, record.device_group, record.serial_number, namespace)
        run.entry_name = name
        self.registry.attach_principal(name, record.identity_arn)
        return self._advance(record, OnboardingStatus.REGISTERED, run, registry_entry_name=name)

    def _complete(self, record: OnboardingRecord, request: OnboardRequest, run: _SagaRun) -> OnboardingRecord:
        completed = record.advance(OnboardingStatus.COMPLETE, lease_owner=None, lease_expires_at=0, last_error=None)
        saved = self._save(completed)
        logger.info("Onboarding group=%s serial=%s status=COMPLETE", record.device_group, record.serial_number)
        return saved

    def _abandon(self, record: OnboardingRecord, run: _SagaRun) -> None:
        # Lost the record to another run; only the credential this run issued
        # and never recorded is ours to clean up.
        if run.credential is None or record.identity_id == run.credential.identity_id:
            return
        logger.warning(
            "Lost ownership of %s; revoking unrecorded certificate id=%s", record.key, run.credential.identity_id
        )
        try:
            self.identity.revoke_credential(run.credential.identity_id)
        except OnboardingError as exc:
            logger.error(
                "Failed to revoke unrecorded certificate id=%s for %s: %s",
                run.credential.identity_id,
                record.key,
                exc,
            )

    # === Compensation ===

    def _fail(self, record: OnboardingRecord, run: _SagaRun, step: str, error: Exception) -> OnboardingRecord:
        logger.warning(
            "Onboarding step=%s failed group=%s serial=%s: %s", step, record.device_group, record.serial_number, error
        )
        identity_id = record.identity_id or (run.credential.identity_id if run.credential else None)
        identity_arn = record.identity_arn or (run.credential.identity_arn if run.credential else None)
        working = replace(
            record,
            identity_id=identity_id,
            identity_arn=identity_arn,
            policy_name=record.policy_name or run.policy_name,
            registry_entry_name=record.registry_entry_name or run.entry_name,
        )
        cleaned, failures = self._compensate(working)
        last_error = f"{step}: {error}"
        if failures:
            last_error += "; compensation failed: " + ", ".join(failure.step for failure in failures)
        failed = cleaned.advance(OnboardingStatus.FAILED, lease_owner=None, lease_expires_at=0, last_error=last_error)
        try:
            return self._save(failed)
        except OnboardingError as exc:
            logger.error("Could not mark %s FAILED: %s", record.key, exc)
            return failed

    def _compensate(self, record: OnboardingRecord):
        """Undo resources named on ``record`` in reverse creation order.

        Returns the record with every undone resource cleared and the list of
        ``CompensationFailure`` for resources that could not be undone.
        """
        failures: List[CompensationFailure] = []
        entry = record.registry_entry_name
        policy = record.policy_name
        identity_id, identity_arn = record.identity_id, record.identity_arn

        if entry:
            try:
                if identity_arn:
                    self.registry.detach_principal(entry, identity_arn)
                self.registry.delete_entry(entry)
                entry = None
            except OnboardingError as exc:
                failures.append(self._compensation_failure(record, "registry_entry", exc))

        if policy:
            try:
                if identity_arn:
                    self.policies.detach_policy(policy, identity_arn)
                try:
                    self.policies.delete_policy_if_unreferenced(policy)
                except ConflictError:
                    logger.info("Policy name=%s is shared; leaving it in place", policy)
                policy = None
            except OnboardingError as exc:
                failures.append(self._compensation_failure(record, "policy", exc))

        if identity_id:
            try:
                self.identity.revoke_credential(identity_id)
                identity_id, identity_arn = None, None
            except OnboardingError as exc:
                failures.append(self._compensation_failure(record, "identity", exc))

        cleaned = replace(
            record,
            registry_entry_name=entry,
            policy_name=policy,
            identity_id=identity_id,
            identity_arn=identity_arn,
        )
        return cleaned, failures

    def _compensation_failure(self, record: OnboardingRecord, step: str, exc: Exception) -> CompensationFailure:
        logger.error(
            "Compensation failed step=%s group=%s serial=%s; operator intervention required: %s",
            step,
            record.device_group,
            record.serial_number,
            exc,
        )
        return CompensationFailure(f"{step} cleanup failed for {record.key}", step=step, cause=exc)

    def cleanup(self, device_group: str, serial_number: str) -> OnboardingRecord:
        """Re-run compensation for a FAILED record that still names resources."""
        request = DeprovisionRequest(device_group, serial_number).validated()
        record = self.ledger.get(request.device_group, request.serial_number)
        if record is None:
            raise NotFoundError(f"no onboarding record for {request.device_group}/{request.serial_number}")
        if record.status != OnboardingStatus.FAILED:
            raise ConflictError(f"record {record.key} is {record.status.value}, not FAILED")
        if not record.has_resources():
            return record
        owner = self._new_owner()
        record = self._claim(record, owner)
        cleaned, failures = self._compensate(record)
        last_error = record.last_error
        if failures:
            last_error = (last_error or "") + "; cleanup failed: " + ", ".join(f.step for f in failures)
        saved = self._save(
            cleaned.advance(OnboardingStatus.FAILED, lease_owner=None, lease_expires_at=0, last_error=last_error)
        )
        if failures:
            raise OperatorActionRequired("cleanup incomplete", reference=record.key)
        logger.info("Cleanup finished for %s", record.key)
        return saved

    # === Results ===

    def _replay_result(self, record: OnboardingRecord) -> OnboardResult:
        return OnboardResult(
            identity_id=record.identity_id or "",
            registry_entry_name=record.registry_entry_name or "",
            policy_name=record.policy_name,
            endpoint=self._endpoint(),
            topic_namespace=record.topic_namespace,
            replayed=True,
        )

    def _completed_result(self, record: OnboardingRecord, run: _SagaRun) -> OnboardResult:
        credential = run.credential
        certificate = credential.certificate_pem if credential else None
        if not certificate and record.identity_id:
            # resumed after a crash: the private key was never persisted
            try:
                certificate = self.identity.get_certificate_pem(record.identity_id)
            except OnboardingError as exc:
                logger.warning("Could not fetch certificate for %s: %s", record.key, exc)
        if certificate and self.archive is not None and record.identity_id:
            try:
                self.archive.store(record.device_group, record.serial_number, record.identity_id, certificate)
            except OnboardingError as exc:
                logger.warning("Certificate archive failed for %s: %s", record.key, exc)
        return OnboardResult(
            identity_id=record.identity_id or "",
            registry_entry_name=record.registry_entry_name or "",
            policy_name=record.policy_name,
            certificate=certificate,
            private_key_material=credential.private_key if credential else None,
            endpoint=self._endpoint(),
            topic_namespace=record.topic_namespace,
        )

    def _endpoint(self) -> Optional[str]:
        if self.settings.iot_data_endpoint:
            return self.settings.iot_data_endpoint
        try:
            return self.registry.data_endpoint() or None
        except OnboardingError as exc:
            logger.warning("Could not resolve IoT data endpoint: %s", exc)
            return None

    # === Deprovisioning ===

    def deprovision(self, request: DeprovisionRequest) -> None:
        request = request.validated()
        group, serial = request.device_group, request.serial_number
        record = self.ledger.get(group, serial)
        if record is None or record.status == OnboardingStatus.DEPROVISIONED:
            logger.info("Deprovision no-op group=%s serial=%s", group, serial)
            return
        owner = self._new_owner()
        if record.status == OnboardingStatus.COMPLETE:
            record = self._claim(record.advance(OnboardingStatus.DEPROVISIONING, last_error=None), owner)
        elif record.status == OnboardingStatus.DEPROVISIONING:
            if record.lease_active(self._clock()) and record.lease_owner != owner:
                raise OnboardingInProgress(f"deprovisioning already in progress for {record.key}")
            record = self._claim(record, owner)
        elif record.status == OnboardingStatus.FAILED:
            raise ConflictError(f"device {record.key} is not onboarded (FAILED)")
        else:
            raise OnboardingInProgress(f"onboarding in progress for {record.key}")

        try:
            self._reverse_chain(record, owner)
        except VersionConflict as exc:
            raise OnboardingInProgress(f"deprovisioning already in progress for {record.key}") from exc
        except OnboardingError as exc:
            raise ProvisioningFailed("device deprovisioning failed", reference=record.key) from exc
        logger.info("Deprovisioned group=%s serial=%s", group, serial)

    def _reverse_chain(self, record: OnboardingRecord, owner: str) -> OnboardingRecord:
        def _progress(current: OnboardingRecord, **changes) -> OnboardingRecord:
            return self._save(
                current.advance(
                    OnboardingStatus.DEPROVISIONING,
                    lease_owner=owner,
                    lease_expires_at=self._lease_until(),
                    **changes,
                )
            )

        try:
            if record.registry_entry_name:
                if record.identity_arn:
                    self.registry.detach_principal(record.registry_entry_name, record.identity_arn)
                self.registry.delete_entry(record.registry_entry_name)
                record = _progress(record, registry_entry_name=None)

            if record.policy_name:
                if record.identity_arn:
                    self.policies.detach_policy(record.policy_name, record.identity_arn)
                try:
                    self.policies.delete_policy_if_unreferenced(record.policy_name)
                except ConflictError:
                    logger.info("Policy name=%s is shared; leaving it in place", record.policy_name)
                record = _progress(record, policy_name=None)

            if record.identity_id:
                identity_id = record.identity_id
                self.identity.revoke_credential(identity_id)
                record = _progress(record, identity_id=None, identity_arn=None)
                if self.archive is not None:
                    try:
                        self.archive.remove(record.device_group, record.serial_number, identity_id)
                    except OnboardingError as exc:
                        logger.warning("Could not remove archived certificate for %s: %s", record.key, exc)

            self.ledger.delete(record.device_group, record.serial_number, expected_version=record.version)
            return record
        except VersionConflict:
            raise
        except OnboardingError as exc:
            # release the lease so a later call resumes from the saved progress
            logger.error(
                "Deprovisioning failed group=%s serial=%s: %s", record.device_group, record.serial_number, exc
            )
            try:
                self._save(replace(record, lease_owner=None, lease_expires_at=0, last_error=f"deprovision: {exc}"))
            except OnboardingError as save_exc:
                logger.error("Could not record deprovision failure for %s: %s", record.key, save_exc)
            raise

    # === Queries and operator actions ===

    def describe(self, device_group: str, serial_number: str) -> OnboardingRecord:
        request = DeprovisionRequest(device_group, serial_number).validated()
        record = self.ledger.get(request.device_group, request.serial_number)
        if record is None:
            raise NotFoundError(f"no onboarding record for {request.device_group}/{request.serial_number}")
        return record

    def list_group(self, device_group: str, limit: int = 100) -> List[OnboardingRecord]:
        return self.ledger.list_group(validate_device_group(device_group), limit=limit)

    def update_credential_status(self, device_group: str, serial_number: str, status: str) -> OnboardingRecord:
        status = str(status or "").strip().upper()
        if status not in OPERATOR_STATUSES:
            raise ValidationError("status must be ACTIVE or INACTIVE")
        record = self.describe(device_group, serial_number)
        if record.status != OnboardingStatus.COMPLETE or not record.identity_id:
            raise ConflictError(f"device {record.key} is not onboarded ({record.status.value})")
        self.identity.update_credential_status(record.identity_id, status)
        return record
