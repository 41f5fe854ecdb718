import logging
import re

from .base import AwsAdapter

logger = logging.getLogger(__name__)


def _safe_segment(value: str) -> str:
    return re.sub(r"[^a-zA-Z0-9._:-]+", "-", (value or "").strip()) or "unknown"


class S3CertificateArchive(AwsAdapter):
    """Public certificate copies in the certificate bucket. Never holds private keys."""

    service = "s3"

    def __init__(self, client, bucket: str, prefix: str, **kwargs):
        super().__init__(client, **kwargs)
        self.bucket = bucket
        self.prefix = prefix.strip("/")

    def key_for(self, device_group: str, serial_number: str, identity_id: str) -> str:
        parts = [
            self.prefix,
            "certificates",
            _safe_segment(device_group),
            _safe_segment(serial_number),
            f"{_safe_segment(identity_id)}.pem.crt",
        ]
        return "/".join(part for part in parts if part)

    def store(self, device_group: str, serial_number: str, identity_id: str, certificate_pem: str) -> str:
        key = self.key_for(device_group, serial_number, identity_id)
        self._call(
            "put_object",
            lambda: self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=certificate_pem.encode("utf-8"),
                ContentType="application/x-pem-file",
                ServerSideEncryption="AES256",
            ),
        )
        logger.info("Archived certificate bucket=%s key=%s", self.bucket, key)
        return key

    def remove(self, device_group: str, serial_number: str, identity_id: str) -> None:
        key = self.key_for(device_group, serial_number, identity_id)
        self._call("delete_object", lambda: self.client.delete_object(Bucket=self.bucket, Key=key))
