import logging
from dataclasses import dataclass, field

from botocore.exceptions import BotoCoreError, ClientError

from ..aws import classify_client_error
from ..errors import ConflictError, NotFoundError, TransientError, ValidationError
from .base import AwsAdapter

logger = logging.getLogger(__name__)

CREDENTIAL_STATUSES = {"ACTIVE", "INACTIVE", "REVOKED"}


@dataclass
class IssuedCredential:
    identity_id: str
    identity_arn: str
    certificate_pem: str
    private_key: str = field(repr=False)


class IotIdentityStore(AwsAdapter):
    """Key pairs and certificates issued by AWS IoT."""

    service = "iot"

    def issue_credential(self, device_id: str) -> IssuedCredential:
        resp = self._call(
            "create_keys_and_certificate",
            lambda: self.client.create_keys_and_certificate(setAsActive=True),
        )
        certificate_id = str(resp.get("certificateId") or "")
        certificate_arn = str(resp.get("certificateArn") or "")
        if not certificate_id or not certificate_arn:
            raise TransientError("IoT did not return a certificate id", operation="iot.create_keys_and_certificate")
        logger.info("Issued certificate id=%s device=%s", certificate_id, device_id)
        return IssuedCredential(
            identity_id=certificate_id,
            identity_arn=certificate_arn,
            certificate_pem=str(resp.get("certificatePem") or ""),
            private_key=str((resp.get("keyPair") or {}).get("PrivateKey") or ""),
        )

    def get_certificate_pem(self, identity_id: str) -> str:
        resp = self._call(
            "describe_certificate",
            lambda: self.client.describe_certificate(certificateId=identity_id),
        )
        return str((resp.get("certificateDescription") or {}).get("certificatePem") or "")

    def update_credential_status(self, identity_id: str, status: str) -> None:
        status = str(status or "").strip().upper()
        if status not in CREDENTIAL_STATUSES:
            raise ValidationError(f"unsupported credential status: {status or '(empty)'}")
        self._call(
            "update_certificate",
            lambda: self.client.update_certificate(certificateId=identity_id, newStatus=status),
        )
        logger.info("Certificate id=%s status=%s", identity_id, status)

    def revoke_credential(self, identity_id: str) -> None:
        try:
            self.update_credential_status(identity_id, "REVOKED")
        except NotFoundError:
            logger.info("Certificate id=%s already gone", identity_id)
            return

        def _delete():
            try:
                return self.client.delete_certificate(certificateId=identity_id, forceDelete=False)
            except (ClientError, BotoCoreError) as exc:
                error = classify_client_error(exc, "iot.delete_certificate")
                # principal detachment is eventually consistent
                if isinstance(error, ConflictError):
                    raise TransientError(str(error), operation=error.operation) from exc
                raise

        try:
            self._call("delete_certificate", _delete)
        except NotFoundError:
            return
        logger.info("Revoked and deleted certificate id=%s", identity_id)
