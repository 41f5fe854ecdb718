import os
from dataclasses import dataclass
from typing import Optional


def _env(name: str, default: str = "") -> str:
    return os.environ.get(name, default).strip()


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


def _env_bool(name: str, default: bool) -> bool:
    raw = _env(name)
    if not raw:
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_delay: float = 0.2
    factor: float = 2.0
    max_delay: float = 2.0

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * (self.factor ** attempt), self.max_delay)


@dataclass(frozen=True)
class Settings:
    env_name: str = "dev"
    table_name: str = "iot-onboarding-onboarding-dev"
    table_pk: str = "deviceGroup"
    table_sk: str = "serialNumber"
    main_topic: str = "data/#"
    certificate_bucket: str = ""
    aws_region: Optional[str] = None
    iot_data_endpoint: str = ""
    retry: RetryPolicy = RetryPolicy()
    call_timeout: float = 5.0
    lease_seconds: int = 300
    auth_enabled: bool = True
    cognito_user_pool_id: str = ""
    cognito_app_client_id: str = ""
    jwt_secret: str = ""
    jwt_issuer: str = "iot-onboarding"
    jwt_audience: str = "onboarding"
    log_level: str = "INFO"

    @property
    def topic_root(self) -> str:
        root = self.main_topic.strip()
        for suffix in ("/#", "/+", "#"):
            if root.endswith(suffix):
                root = root[: -len(suffix)]
                break
        return root.strip("/")

    @property
    def cognito_issuer(self) -> str:
        if not self.cognito_user_pool_id:
            return ""
        region = self.aws_region or self.cognito_user_pool_id.split("_", 1)[0]
        return f"https://cognito-idp.{region}.amazonaws.com/{self.cognito_user_pool_id}"


def load_settings() -> Settings:
    env_name = _env("LAMBDA_ENV", "dev") or "dev"
    retry = RetryPolicy(
        attempts=max(1, _env_int("ONBOARDING_RETRY_ATTEMPTS", 3)),
        base_delay=_env_int("ONBOARDING_RETRY_BASE_DELAY_MS", 200) / 1000.0,
        factor=_env_float("ONBOARDING_RETRY_FACTOR", 2.0),
        max_delay=_env_int("ONBOARDING_RETRY_MAX_DELAY_MS", 2000) / 1000.0,
    )
    return Settings(
        env_name=env_name,
        table_name=_env("ONBOARDING_TABLE_NAME") or f"iot-onboarding-onboarding-{env_name}",
        table_pk=_env("ONBOARDING_TABLE_PK") or "deviceGroup",
        table_sk=_env("ONBOARDING_TABLE_SK") or "serialNumber",
        main_topic=_env("MAIN_TOPIC") or "data/#",
        certificate_bucket=_env("S3_MULTIMEDIA"),
        aws_region=_env("AWS_REGION") or _env("AWS_DEFAULT_REGION") or None,
        iot_data_endpoint=_env("IOT_DATA_ENDPOINT"),
        retry=retry,
        call_timeout=_env_float("ONBOARDING_CALL_TIMEOUT_SECONDS", 5.0),
        lease_seconds=_env_int("ONBOARDING_LEASE_SECONDS", 300),
        auth_enabled=_env_bool("ONBOARDING_AUTH_ENABLED", True),
        cognito_user_pool_id=_env("COGNITO_USER_POOL_ID"),
        cognito_app_client_id=_env("COGNITO_APP_CLIENT_ID"),
        jwt_secret=_env("ONBOARDING_JWT_SECRET"),
        jwt_issuer=_env("ONBOARDING_JWT_ISSUER") or "iot-onboarding",
        jwt_audience=_env("ONBOARDING_JWT_AUDIENCE") or "onboarding",
        log_level=(_env("ONBOARDING_LOG_LEVEL") or "INFO").upper(),
    )
