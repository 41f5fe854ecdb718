import logging
from dataclasses import dataclass
from typing import Optional

from ..errors import ConflictError, NotFoundError
from ..naming import TOPIC_ATTRIBUTE
from .base import AwsAdapter

logger = logging.getLogger(__name__)


@dataclass
class RegistryEntry:
    name: str
    device_group: str
    serial_number: str
    principal: Optional[str] = None
    topic_namespace: Optional[str] = None


class IotRegistry(AwsAdapter):
    """Things in the AWS IoT registry."""

    service = "iot"

    def create_entry(self, name: str, device_group: str, serial_number: str, topic_namespace: str) -> str:
        """Create the thing, or reuse it when it already belongs to this device.

        ``topicNamespace`` is stored as an attribute; the group policy reads it
        through a policy variable to scope each connection's topics.
        """
        attributes = {"deviceGroup": device_group, "serialNumber": serial_number, TOPIC_ATTRIBUTE: topic_namespace}
        try:
            self._call(
                "create_thing",
                lambda: self.client.create_thing(thingName=name, attributePayload={"attributes": attributes}),
            )
        except ConflictError:
            existing = self.describe(name)
            if not existing or (existing.device_group, existing.serial_number) != (device_group, serial_number):
                owner = f"{existing.device_group}/{existing.serial_number}" if existing else "unknown"
                raise ConflictError(f"registry entry {name} belongs to {owner}", operation="iot.create_thing")
            if existing.topic_namespace != topic_namespace:
                self._call(
                    "update_thing",
                    lambda: self.client.update_thing(
                        thingName=name,
                        attributePayload={"attributes": {TOPIC_ATTRIBUTE: topic_namespace}, "merge": True},
                    ),
                )
        logger.info("Registry entry name=%s group=%s", name, device_group)
        return name

    def attach_principal(self, name: str, identity_arn: str) -> None:
        self._call(
            "attach_thing_principal",
            lambda: self.client.attach_thing_principal(thingName=name, principal=identity_arn),
        )

    def detach_principal(self, name: str, identity_arn: str) -> None:
        try:
            self._call(
                "detach_thing_principal",
                lambda: self.client.detach_thing_principal(thingName=name, principal=identity_arn),
            )
        except NotFoundError:
            logger.info("Registry entry name=%s has no principal to detach", name)

    def delete_entry(self, name: str) -> None:
        try:
            self._call("delete_thing", lambda: self.client.delete_thing(thingName=name))
        except NotFoundError:
            return
        logger.info("Deleted registry entry name=%s", name)

    def describe(self, name: str) -> Optional[RegistryEntry]:
        try:
            resp = self._call("describe_thing", lambda: self.client.describe_thing(thingName=name))
        except NotFoundError:
            return None
        attributes = resp.get("attributes") or {}
        principals = self._call(
            "list_thing_principals",
            lambda: self.client.list_thing_principals(thingName=name),
        ).get("principals") or []
        return RegistryEntry(
            name=str(resp.get("thingName") or name),
            device_group=str(attributes.get("deviceGroup") or ""),
            serial_number=str(attributes.get("serialNumber") or ""),
            principal=principals[0] if principals else None,
            topic_namespace=attributes.get(TOPIC_ATTRIBUTE),
        )

    def data_endpoint(self) -> str:
        resp = self._call("describe_endpoint", lambda: self.client.describe_endpoint(endpointType="iot:Data-ATS"))
        return str(resp.get("endpointAddress") or "")
