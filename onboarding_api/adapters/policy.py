import logging

from ..errors import ConflictError, NotFoundError
from .base import AwsAdapter

logger = logging.getLogger(__name__)


class IotPolicyStore(AwsAdapter):
    service = "iot"

    def ensure_policy(self, name: str, document: str) -> str:
        try:
            self._call(
                "create_policy",
                lambda: self.client.create_policy(policyName=name, policyDocument=document),
            )
            logger.info("Created policy name=%s", name)
        except ConflictError:
            self._call("get_policy", lambda: self.client.get_policy(policyName=name))
        return name

    def attach_policy(self, name: str, identity_arn: str) -> None:
        self._call("attach_policy", lambda: self.client.attach_policy(policyName=name, target=identity_arn))

    def detach_policy(self, name: str, identity_arn: str) -> None:
        try:
            self._call("detach_policy", lambda: self.client.detach_policy(policyName=name, target=identity_arn))
        except NotFoundError:
            logger.info("Policy name=%s already detached or gone", name)

    def delete_policy_if_unreferenced(self, name: str) -> None:
        """Delete ``name`` unless a credential still references it.

        Raises ``ConflictError`` when the policy is shared.
        """
        try:
            resp = self._call(
                "list_targets_for_policy",
                lambda: self.client.list_targets_for_policy(policyName=name, pageSize=1),
            )
        except NotFoundError:
            return
        if resp.get("targets"):
            raise ConflictError(f"policy {name} is still attached", operation="iot.delete_policy")
        try:
            self._call("delete_policy", lambda: self.client.delete_policy(policyName=name))
        except NotFoundError:
            return
        logger.info("Deleted policy name=%s", name)
