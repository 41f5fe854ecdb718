from .certificates import S3CertificateArchive
from .identity import IotIdentityStore, IssuedCredential
from .policy import IotPolicyStore
from .registry import IotRegistry, RegistryEntry

__all__ = [
    "IotIdentityStore",
    "IotPolicyStore",
    "IotRegistry",
    "IssuedCredential",
    "RegistryEntry",
    "S3CertificateArchive",
]
