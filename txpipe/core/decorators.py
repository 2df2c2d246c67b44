# /txpipe/core/decorators.py
# Reusable decorators for operational resilience.
import logging

from tenacity import before_sleep_log, retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from txpipe.core.errors import EndpointTransportError
from txpipe.core.logger import get_logger

log = get_logger(__name__)

# Idempotent endpoint reads only. Submissions run their own retry policy.
retriable_network_call = retry(
    retry=retry_if_exception_type(EndpointTransportError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
    before_sleep=before_sleep_log(log, logging.WARNING),
    reraise=True,  # Re-raise the last exception after retries are exhausted
)
