import time
from typing import Any, Callable, Optional, TypeVar

from ..aws import call_with_retry
from ..settings import RetryPolicy

T = TypeVar("T")


class AwsAdapter:
    service = ""

    def __init__(self, client, retry: Optional[RetryPolicy] = None, sleep: Callable[[float], Any] = time.sleep):
        self.client = client
        self.retry = retry or RetryPolicy()
        self._sleep = sleep

    def _call(self, operation: str, fn: Callable[[], T]) -> T:
        return call_with_retry(f"{self.service}.{operation}", fn, self.retry, sleep=self._sleep)
