from functools import lru_cache

from .adapters import IotIdentityStore, IotPolicyStore, IotRegistry, S3CertificateArchive
from .aws import build_client
from .ledger import DynamoLedger
from .orchestrator import OnboardingOrchestrator
from .settings import Settings, load_settings


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()


def build_orchestrator(settings: Settings) -> OnboardingOrchestrator:
    iot = build_client("iot", settings)
    archive = None
    if settings.certificate_bucket:
        archive = S3CertificateArchive(
            build_client("s3", settings),
            bucket=settings.certificate_bucket,
            prefix=settings.env_name,
            retry=settings.retry,
        )
    return OnboardingOrchestrator(
        ledger=DynamoLedger(build_client("dynamodb", settings), settings),
        identity=IotIdentityStore(iot, retry=settings.retry),
        policies=IotPolicyStore(iot, retry=settings.retry),
        registry=IotRegistry(iot, retry=settings.retry),
        archive=archive,
        settings=settings,
    )


@lru_cache(maxsize=1)
def _orchestrator() -> OnboardingOrchestrator:
    return build_orchestrator(get_settings())


def get_orchestrator() -> OnboardingOrchestrator:
    return _orchestrator()
