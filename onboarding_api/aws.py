import logging
import time
from typing import Any, Callable, Optional, TypeVar

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .errors import ConflictError, NotFoundError, OnboardingError, PermanentError, TransientError
from .settings import RetryPolicy, Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERROR_CODES = {
    "Throttling",
    "ThrottlingException",
    "TooManyRequestsException",
    "RequestLimitExceeded",
    "ProvisionedThroughputExceededException",
    "RequestThrottled",
    "SlowDown",
    "ServiceUnavailableException",
    "ServiceUnavailable",
    "InternalFailureException",
    "InternalFailure",
    "InternalServerError",
    "InternalError",
    "LimitExceededException",
}
CONFLICT_ERROR_CODES = {
    "ResourceAlreadyExistsException",
    "DeleteConflictException",
    "CertificateStateException",
    "ConflictException",
}
NOT_FOUND_ERROR_CODES = {
    "ResourceNotFoundException",
    "NoSuchKey",
    "NoSuchBucket",
    "NotFoundException",
}


def error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code") or "")


def classify_client_error(exc: Exception, operation: str = "") -> OnboardingError:
    if isinstance(exc, OnboardingError):
        return exc
    if isinstance(exc, ClientError):
        code = error_code(exc)
        status = int(exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0)
        message = f"{operation or 'aws call'} failed: {code or 'ClientError'}"
        if code in TRANSIENT_ERROR_CODES or status >= 500:
            return TransientError(message, operation=operation)
        if code in CONFLICT_ERROR_CODES:
            return ConflictError(message, operation=operation)
        if code in NOT_FOUND_ERROR_CODES:
            return NotFoundError(message, operation=operation)
        return PermanentError(message, operation=operation)
    if isinstance(exc, BotoCoreError):
        return TransientError(f"{operation or 'aws call'} failed: {exc.__class__.__name__}", operation=operation)
    return PermanentError(f"{operation or 'call'} failed: {exc.__class__.__name__}", operation=operation)


def call_with_retry(
    operation: str,
    fn: Callable[[], T],
    policy: RetryPolicy,
    sleep: Callable[[float], Any] = time.sleep,
) -> T:
    attempts = max(1, policy.attempts)
    for attempt in range(attempts):
        try:
            return fn()
        except (ClientError, BotoCoreError) as exc:
            error = classify_client_error(exc, operation)
            error.__cause__ = exc
            if not isinstance(error, TransientError):
                raise error
        except TransientError as exc:
            error = exc
        if attempt + 1 >= attempts:
            raise error
        delay = policy.delay_for(attempt)
        logger.warning(
            "Transient failure operation=%s attempt=%s/%s retry_in=%.3fs: %s",
            operation,
            attempt + 1,
            attempts,
            delay,
            error,
        )
        sleep(delay)
    raise TransientError(f"{operation} exhausted retries", operation=operation)


def client_config(settings: Settings) -> Config:
    return Config(
        connect_timeout=settings.call_timeout,
        read_timeout=settings.call_timeout,
        retries={"max_attempts": 1, "mode": "standard"},
    )


def build_client(service: str, settings: Settings, config: Optional[Config] = None):
    config = config or client_config(settings)
    if settings.aws_region:
        return boto3.client(service, region_name=settings.aws_region, config=config)
    return boto3.client(service, config=config)
