import datetime as dt
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional

from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.exceptions import ClientError

from .aws import call_with_retry, error_code
from .errors import VersionConflict
from .settings import RetryPolicy, Settings


class OnboardingStatus(str, Enum):
    PENDING = "PENDING"
    IDENTITY_ISSUED = "IDENTITY_ISSUED"
    POLICY_ATTACHED = "POLICY_ATTACHED"
    REGISTERED = "REGISTERED"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"
    DEPROVISIONING = "DEPROVISIONING"
    DEPROVISIONED = "DEPROVISIONED"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {OnboardingStatus.COMPLETE, OnboardingStatus.FAILED, OnboardingStatus.DEPROVISIONED}
)

ALLOWED_TRANSITIONS = {
    OnboardingStatus.PENDING: {OnboardingStatus.IDENTITY_ISSUED, OnboardingStatus.FAILED},
    OnboardingStatus.IDENTITY_ISSUED: {OnboardingStatus.POLICY_ATTACHED, OnboardingStatus.FAILED},
    OnboardingStatus.POLICY_ATTACHED: {OnboardingStatus.REGISTERED, OnboardingStatus.FAILED},
    OnboardingStatus.REGISTERED: {OnboardingStatus.COMPLETE, OnboardingStatus.FAILED},
    OnboardingStatus.COMPLETE: {OnboardingStatus.DEPROVISIONING},
    OnboardingStatus.FAILED: {OnboardingStatus.PENDING, OnboardingStatus.FAILED},
    OnboardingStatus.DEPROVISIONING: {OnboardingStatus.DEPROVISIONED, OnboardingStatus.DEPROVISIONING},
    OnboardingStatus.DEPROVISIONED: {OnboardingStatus.PENDING},
}


def can_transition(current: OnboardingStatus, target: OnboardingStatus) -> bool:
    if current == target and not current.terminal:
        return True
    return target in ALLOWED_TRANSITIONS.get(current, set())


def utc_now() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


@dataclass
class OnboardingRecord:
    device_group: str
    serial_number: str
    status: OnboardingStatus = OnboardingStatus.PENDING
    identity_id: Optional[str] = None
    identity_arn: Optional[str] = None
    policy_name: Optional[str] = None
    registry_entry_name: Optional[str] = None
    topic_namespace: Optional[str] = None
    requested_by: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    last_error: Optional[str] = None
    lease_owner: Optional[str] = None
    lease_expires_at: int = 0
    version: int = 0

    @property
    def key(self) -> str:
        return f"{self.device_group}/{self.serial_number}"

    def has_resources(self) -> bool:
        return bool(self.identity_id or self.policy_name or self.registry_entry_name)

    def lease_active(self, now: float) -> bool:
        return bool(self.lease_owner) and self.lease_expires_at > now

    def advance(self, status: OnboardingStatus, **changes: Any) -> "OnboardingRecord":
        if not can_transition(self.status, status):
            raise ValueError(f"illegal transition {self.status.value} -> {status.value} for {self.key}")
        return replace(self, status=status, updated_at=utc_now(), **changes)

    def to_public(self) -> Dict[str, Any]:
        return {
            "deviceGroup": self.device_group,
            "serialNumber": self.serial_number,
            "status": self.status.value,
            "identityId": self.identity_id,
            "policyName": self.policy_name,
            "registryEntryName": self.registry_entry_name,
            "topicNamespace": self.topic_namespace,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "lastError": self.last_error,
        }


_ATTRIBUTES = {
    "status": "status",
    "identity_id": "identityId",
    "identity_arn": "identityArn",
    "policy_name": "policyName",
    "registry_entry_name": "registryEntryName",
    "topic_namespace": "topicNamespace",
    "requested_by": "requestedBy",
    "created_at": "createdAt",
    "updated_at": "updatedAt",
    "last_error": "lastError",
    "lease_owner": "leaseOwner",
    "lease_expires_at": "leaseExpiresAt",
    "version": "version",
}


class DynamoLedger:
    """Onboarding records in the DynamoDB onboarding table.

    Every write is conditional on the version the caller read, so two
    orchestrations racing on one device key cannot both succeed.
    """

    def __init__(self, client, settings: Settings, retry: Optional[RetryPolicy] = None, sleep=None):
        self.client = client
        self.table = settings.table_name
        self.pk = settings.table_pk
        self.sk = settings.table_sk
        self.retry = retry or settings.retry
        self._sleep = sleep
        self._serializer = TypeSerializer()
        self._deserializer = TypeDeserializer()

    def _call(self, operation: str, fn):
        if self._sleep is None:
            return call_with_retry(operation, fn, self.retry)
        return call_with_retry(operation, fn, self.retry, sleep=self._sleep)

    def _key(self, device_group: str, serial_number: str) -> Dict[str, Any]:
        return {
            self.pk: {"S": device_group},
            self.sk: {"S": serial_number},
        }

    def to_item(self, record: OnboardingRecord) -> Dict[str, Any]:
        plain: Dict[str, Any] = {self.pk: record.device_group, self.sk: record.serial_number}
        for attr, name in _ATTRIBUTES.items():
            value = getattr(record, attr)
            if isinstance(value, Enum):
                value = value.value
            if value is None or value == "":
                continue
            plain[name] = value
        return {key: self._serializer.serialize(value) for key, value in plain.items()}

    def from_item(self, item: Dict[str, Any]) -> OnboardingRecord:
        plain = {key: self._deserializer.deserialize(value) for key, value in item.items()}
        kwargs: Dict[str, Any] = {}
        for attr, name in _ATTRIBUTES.items():
            if name in plain:
                kwargs[attr] = plain[name]
        kwargs["status"] = OnboardingStatus(kwargs.get("status") or OnboardingStatus.PENDING.value)
        kwargs["version"] = int(kwargs.get("version") or 0)
        kwargs["lease_expires_at"] = int(kwargs.get("lease_expires_at") or 0)
        return OnboardingRecord(device_group=str(plain[self.pk]), serial_number=str(plain[self.sk]), **kwargs)

    def get(self, device_group: str, serial_number: str) -> Optional[OnboardingRecord]:
        resp = self._call(
            "ledger.get",
            lambda: self.client.get_item(
                TableName=self.table,
                Key=self._key(device_group, serial_number),
                ConsistentRead=True,
            ),
        )
        item = resp.get("Item")
        if not item:
            return None
        return self.from_item(item)

    def put(self, record: OnboardingRecord) -> OnboardingRecord:
        """Write ``record`` if absent (version 0) or still at the version read.

        Returns the stored record with its version incremented; raises
        ``VersionConflict`` when another writer got there first.
        A retry whose earlier attempt landed finds its own item in the
        conditional-failure response and is treated as written.
        """
        stored = replace(record, version=record.version + 1)
        params: Dict[str, Any] = {
            "TableName": self.table,
            "Item": self.to_item(stored),
            "ReturnValuesOnConditionCheckFailure": "ALL_OLD",
        }
        if record.version == 0:
            params["ConditionExpression"] = "attribute_not_exists(#pk)"
            params["ExpressionAttributeNames"] = {"#pk": self.pk}
        else:
            params["ConditionExpression"] = "#version = :expected"
            params["ExpressionAttributeNames"] = {"#version": "version"}
            params["ExpressionAttributeValues"] = {":expected": {"N": str(record.version)}}

        def _put():
            try:
                return self.client.put_item(**params)
            except ClientError as exc:
                if error_code(exc) == "ConditionalCheckFailedException":
                    if exc.response.get("Item") == params["Item"]:
                        return {}
                    raise VersionConflict(
                        f"ledger record {record.key} changed concurrently", operation="ledger.put"
                    ) from exc
                raise

        self._call("ledger.put", _put)
        return stored

    def delete(self, device_group: str, serial_number: str, expected_version: Optional[int] = None) -> None:
        params: Dict[str, Any] = {
            "TableName": self.table,
            "Key": self._key(device_group, serial_number),
        }
        if expected_version is not None:
            params["ConditionExpression"] = "#version = :expected"
            params["ExpressionAttributeNames"] = {"#version": "version"}
            params["ExpressionAttributeValues"] = {":expected": {"N": str(expected_version)}}
            params["ReturnValuesOnConditionCheckFailure"] = "ALL_OLD"

        def _delete():
            try:
                return self.client.delete_item(**params)
            except ClientError as exc:
                if error_code(exc) == "ConditionalCheckFailedException":
                    # item already gone, e.g. an earlier attempt's response was lost
                    if not exc.response.get("Item"):
                        return {}
                    raise VersionConflict(
                        f"ledger record {device_group}/{serial_number} changed concurrently",
                        operation="ledger.delete",
                    ) from exc
                raise

        self._call("ledger.delete", _delete)

    def list_group(self, device_group: str, limit: int = 100) -> List[OnboardingRecord]:
        records: List[OnboardingRecord] = []
        params: Dict[str, Any] = {
            "TableName": self.table,
            "KeyConditionExpression": "#pk = :group",
            "ExpressionAttributeNames": {"#pk": self.pk},
            "ExpressionAttributeValues": {":group": {"S": device_group}},
            "Limit": limit,
        }
        while len(records) < limit:
            resp = self._call("ledger.query", lambda: self.client.query(**params))
            records.extend(self.from_item(item) for item in resp.get("Items", []))
            last_key = resp.get("LastEvaluatedKey")
            if not last_key:
                break
            params["ExclusiveStartKey"] = last_key
        return records[:limit]
