"""
Fire-and-forget progress events over Redis pub/sub.

A socket gateway subscribed to these channels forwards the events to the
reviewer's browser. Events are handed to a single background worker, in
order, so a slow or unreachable Redis never holds up the caller. Publishing
never raises.
"""
import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor

import redis
from django.conf import settings
from django.utils import timezone

logger = logging.getLogger(__name__)

VERIFICATIONS_NAMESPACE = 'employee-verifications'
EVENT_UPDATED = 'employee-verification:updated'
EVENT_APPROVAL_PROGRESS = 'employee-verification:approval-progress'

STEP_START = 'start'
STEP_VALIDATE = 'validate'
STEP_IDENTITY = 'identity'
STEP_PIN = 'pin'
STEP_EMPLOYEES = 'employees'
STEP_MERGE = 'merge'
STEP_USER = 'user'
STEP_EMAIL = 'email'
STEP_DONE = 'done'

# Events waiting for the worker; extra events are dropped.
MAX_PENDING_EVENTS = 100

_lock = threading.Lock()
_pools = {}
_executor = None
_pending = threading.BoundedSemaphore(MAX_PENDING_EVENTS)


def company_channel(company_id):
    return f"{VERIFICATIONS_NAMESPACE}:company:{company_id}"


def get_redis_client():
    """Client on a connection pool shared per REDIS_URL."""
    url = settings.REDIS_URL
    with _lock:
        pool = _pools.get(url)
        if pool is None:
            pool = redis.ConnectionPool.from_url(url, socket_connect_timeout=1, socket_timeout=1)
            _pools[url] = pool
    return redis.Redis(connection_pool=pool)


def _get_executor():
    global _executor
    with _lock:
        if _executor is None:
            _executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='progress-events')
        return _executor


def publish_event(channel, event, payload):
    """Publish one event now. Returns False when it could not be delivered."""
    if not getattr(settings, 'REDIS_URL', ''):
        return False

    message = json.dumps({'event': event, 'data': payload}, default=str)
    try:
        get_redis_client().publish(channel, message)
    except Exception as e:
        logger.warning("Failed to publish %s on %s: %s", event, channel, e)
        return False
    return True


def submit_event(channel, event, payload):
    """
    Queue one event for the background publisher.

    Returns the Future of the publish (resolving to True/False), or None when
    publishing is disabled or the queue is full.
    """
    if not getattr(settings, 'REDIS_URL', ''):
        return None
    if not _pending.acquire(blocking=False):
        logger.warning("Progress event queue is full; dropping %s on %s", event, channel)
        return None
    try:
        future = _get_executor().submit(publish_event, channel, event, payload)
    except RuntimeError as e:
        _pending.release()
        logger.warning("Progress publisher unavailable; dropping %s: %s", event, e)
        return None
    future.add_done_callback(lambda _: _pending.release())
    return future


def emit_approval_progress(company_id, verification_id, reviewer_id, step, message):
    if company_id is None:
        return None
    return submit_event(company_channel(company_id), EVENT_APPROVAL_PROGRESS, {
        'companyId': str(company_id),
        'verificationId': str(verification_id),
        'verificationType': 'registration',
        'reviewerId': str(reviewer_id) if reviewer_id is not None else None,
        'step': step,
        'message': message,
        'createdAt': timezone.now().isoformat(),
    })


def emit_verification_updated(verification_id, action, user_id=None):
    """Broadcast a registration change to every active company. Returns the number of queued events."""
    from accounts.models import Company

    try:
        company_ids = list(Company.objects.filter(is_active=True).values_list('id', flat=True))
    except Exception as e:
        logger.warning("Could not list companies for %s broadcast: %s", action, e)
        return 0

    queued = 0
    for company_id in company_ids:
        payload = {
            'companyId': str(company_id),
            'verificationId': str(verification_id),
            'verificationType': 'registration',
            'action': action,
        }
        if user_id is not None:
            payload['userId'] = str(user_id)
        if submit_event(company_channel(company_id), EVENT_UPDATED, payload) is not None:
            queued += 1
    return queued


class ProgressReporter:
    """
    Approval progress bound to one request; a no-op without a request.

    Stops publishing after the first failed delivery.
    """

    def __init__(self, company_id=None, verification_id=None, reviewer_id=None):
        self.company_id = company_id
        self.verification_id = verification_id
        self.reviewer_id = reviewer_id
        self.failed = False

    @property
    def enabled(self):
        return self.company_id is not None and self.verification_id is not None and not self.failed

    def _on_published(self, future):
        if not future.result() and not self.failed:
            self.failed = True
            logger.info("Progress events for request %s switched off after a failed publish", self.verification_id)

    def __call__(self, step, message):
        logger.debug("Provisioning progress [%s] %s", step, message)
        if not self.enabled:
            return None
        future = emit_approval_progress(self.company_id, self.verification_id, self.reviewer_id, step, message)
        if future is not None:
            future.add_done_callback(self._on_published)
        return future
