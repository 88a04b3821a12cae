"""HTTP client for the SMS provider, with retries and connection pooling.

Pattern: requests.Session with a tenacity retry wrapper.

- Every request carries a timeout (no unbounded waits on the provider)
- Connection errors, timeouts and 5xx/429 responses are retried with
  exponential backoff, a bounded number of times
- The final failure is re-raised for the caller (the notifier) to handle
"""
import logging

import requests
from requests.adapters import HTTPAdapter
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from clinic_booking import config

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


def create_http_session(
    max_retries: int = None,
    timeout: int = None,
    backoff_multiplier: float = 0.5
) -> requests.Session:
    """
    Create HTTP session with retry and connection pooling.

    Args:
        max_retries: Retry attempts after the first call (default: config.SMS_MAX_RETRIES)
        timeout: Per-request timeout in seconds (default: config.SMS_TIMEOUT_SECONDS)
        backoff_multiplier: Exponential backoff base; delays are
            multiplier * 1s, 2s, 4s... capped at 4s

    Returns:
        requests.Session whose ``post`` retries transient failures
    """
    max_retries = config.SMS_MAX_RETRIES if max_retries is None else max_retries
    timeout = timeout or config.SMS_TIMEOUT_SECONDS

    session = requests.Session()
    adapter = HTTPAdapter(pool_connections=4, pool_maxsize=10, max_retries=0)
    session.mount("http://", adapter)
    session.mount("https://", adapter)

    original_post = session.post

    @retry(
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_exponential(multiplier=backoff_multiplier, max=4),
        retry=retry_if_exception_type((
            requests.exceptions.ConnectionError,
            requests.exceptions.Timeout,
            requests.exceptions.HTTPError
        )),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True
    )
    def post_with_retry(*args, **kwargs):
        kwargs.setdefault("timeout", timeout)
        response = original_post(*args, **kwargs)
        if response.status_code in RETRYABLE_STATUS:
            response.raise_for_status()
        return response

    session.post = post_with_retry
    return session
