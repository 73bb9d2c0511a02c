import logging
import time

from django.conf import settings

from .exceptions import DeadlineExceeded

logger = logging.getLogger(__name__)


class Deadline:
    """Wall-clock budget for one orchestration call (monotonic)."""

    def __init__(self, seconds):
        self.seconds = seconds
        self._expires_at = time.monotonic() + seconds

    @classmethod
    def from_settings(cls):
        config = getattr(settings, 'PROVISIONING', {}) or {}
        return cls(config.get('DEADLINE_SECONDS', 120))

    def remaining(self):
        return max(0.0, self._expires_at - time.monotonic())

    def expired(self):
        return time.monotonic() >= self._expires_at

    def check(self, step=''):
        if self.expired():
            logger.warning("Provisioning deadline of %ss exceeded at step %s", self.seconds, step or 'unknown')
            raise DeadlineExceeded(
                f"Provisioning did not finish within {self.seconds} seconds"
                + (f" (stopped at {step})" if step else '')
            )
