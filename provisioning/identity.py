import logging
import uuid
from dataclasses import dataclass

from django.contrib.auth import get_user_model
from django.db import IntegrityError, transaction
from django.db.models import Max
from django.utils import timezone

from accounts.utils import normalize_email
from employees.utils import find_legacy_identity, max_tenant_employee_number

from .exceptions import IdentityConflictError, ValidationError
from .models import EmployeeIdentity

logger = logging.getLogger(__name__)

IDENTITY_RESOLVE_ATTEMPTS = 3


@dataclass(frozen=True)
class ResolvedIdentity:
    identity_id: int
    email: str
    employee_number: int
    website_key: str
    was_existing: bool


def _as_resolved(identity, was_existing):
    return ResolvedIdentity(
        identity_id=identity.id,
        email=identity.email,
        employee_number=identity.employee_number,
        website_key=identity.website_key,
        was_existing=was_existing,
    )


def _legacy_pair_from_users(email):
    User = get_user_model()
    user = (
        User.objects.using('default')
        .filter(email__iexact=email, employee_number__isnull=False, user_key__isnull=False)
        .exclude(user_key='')
        .only('employee_number', 'user_key')
        .first()
    )
    if user:
        return user.employee_number, user.user_key
    return None


def _next_employee_number():
    User = get_user_model()
    identity_max = EmployeeIdentity.objects.using('default').aggregate(value=Max('employee_number'))['value']
    users_max = User.objects.using('default').aggregate(value=Max('employee_number'))['value']
    return max(identity_max or 0, users_max or 0, max_tenant_employee_number()) + 1


def _resolve_once(email):
    with transaction.atomic(using='default'):
        identity = (
            EmployeeIdentity.objects.using('default')
            .select_for_update()
            .filter(email=email)
            .first()
        )
        if identity:
            return _as_resolved(identity, was_existing=True)

        legacy = find_legacy_identity(email) or _legacy_pair_from_users(email)
        if legacy:
            employee_number, website_key = legacy
            identity = EmployeeIdentity.objects.using('default').create(
                email=email,
                employee_number=employee_number,
                website_key=website_key,
            )
            logger.info("Adopted legacy employee number %s for %s", employee_number, email)
            return _as_resolved(identity, was_existing=True)

        identity = EmployeeIdentity.objects.using('default').create(
            email=email,
            employee_number=_next_employee_number(),
            website_key=str(uuid.uuid4()),
        )
        logger.info("Created employee identity %s with number %s", identity.id, identity.employee_number)
        return _as_resolved(identity, was_existing=False)


def resolve_or_create_identity(email, *, attempts=IDENTITY_RESOLVE_ATTEMPTS):
    """
    Return the identity for this email, creating it when missing.

    A lost race on the unique email (or website key) constraint is retried;
    the second pass finds the row the other writer committed.
    """
    email = normalize_email(email)
    if not email:
        raise ValidationError('Email is required')

    for attempt in range(1, attempts + 1):
        try:
            return _resolve_once(email)
        except IntegrityError as e:
            logger.warning("Identity insert race for %s (attempt %s/%s): %s", email, attempt, attempts, e)

    raise IdentityConflictError()


def bump_employee_number(identity_id, employee_number):
    """Move the stored number forward to employee_number; never backwards."""
    updated = (
        EmployeeIdentity.objects.using('default')
        .filter(id=identity_id, employee_number__lt=employee_number)
        .update(employee_number=employee_number, updated_at=timezone.now())
    )
    if updated:
        logger.info("Employee identity %s moved to number %s", identity_id, employee_number)
    return bool(updated)
