from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .naming import validate_device_group, validate_serial_number, validate_topic_namespace


@dataclass
class OnboardRequest:
    device_group: str
    serial_number: str
    topic_namespace: str
    caller_identity: str = ""

    def validated(self, topic_root: str) -> "OnboardRequest":
        group = validate_device_group(self.device_group)
        return OnboardRequest(
            device_group=group,
            serial_number=validate_serial_number(self.serial_number),
            topic_namespace=validate_topic_namespace(self.topic_namespace, topic_root=topic_root, device_group=group),
            caller_identity=str(self.caller_identity or "").strip(),
        )


@dataclass
class DeprovisionRequest:
    device_group: str
    serial_number: str

    def validated(self) -> "DeprovisionRequest":
        return DeprovisionRequest(
            device_group=validate_device_group(self.device_group),
            serial_number=validate_serial_number(self.serial_number),
        )


@dataclass
class OnboardResult:
    identity_id: str
    registry_entry_name: str
    policy_name: Optional[str] = None
    certificate: Optional[str] = None
    private_key_material: Optional[str] = field(default=None, repr=False)
    endpoint: Optional[str] = None
    topic_namespace: Optional[str] = None
    replayed: bool = False

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "identityId": self.identity_id,
            "registryEntryName": self.registry_entry_name,
            "policyName": self.policy_name,
            "endpoint": self.endpoint,
            "topicNamespace": self.topic_namespace,
            "replayed": self.replayed,
        }
        if self.certificate:
            payload["certificate"] = self.certificate
        if self.private_key_material:
            payload["privateKeyMaterial"] = self.private_key_material
        return payload
