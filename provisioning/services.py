"""
Registration review and branch re-assignment.

Both flows run the same pipeline: resolve identity, allocate a number
against the HR backend, provision every branch, merge contacts, then commit
all local state in one master transaction. Anything raised before that
transaction leaves the local databases as they were, apart from the
identity row which only ever moves forward.
"""
import logging
import uuid
from dataclasses import dataclass, field
from typing import List, Optional

from django.contrib.auth import get_user_model
from django.db import transaction
from django.utils import timezone

from accounts.crypto import decrypt_value, encrypt_value
from accounts.database_utils import ensure_tenant_database_loaded
from accounts.models import Company, RegistrationRequest, RegistrationRequestAssignment, Role, UserRole
from accounts.utils import normalize_email, send_registration_approved_email
from employees.models import Branch
from employees.utils import upsert_local_employee

from . import progress as events
from .allocator import allocate_number
from .assignments import resolve_company_assignments, validate_resident_branch
from .deadline import Deadline
from .exceptions import ConflictError, NotFoundError, ValidationError
from .hr_backend import get_hr_backend_client
from .identity import resolve_or_create_identity
from .models import ProvisioningFailureLog
from .provisioner import PersonDetails, ProvisioningResult, provision_branches, unify_contacts
from .snapshot import get_current_resident, write_snapshot

logger = logging.getLogger(__name__)

User = get_user_model()


@dataclass
class ApprovalResult:
    request_id: uuid.UUID
    user_id: int
    employee_number: int
    provisioning: ProvisioningResult = field(default_factory=ProvisioningResult)

    def to_dict(self):
        return {
            'request_id': str(self.request_id),
            'user_id': self.user_id,
            'employee_number': self.employee_number,
            'provisioning': self.provisioning.to_dict(),
        }


@dataclass
class AssignmentResult:
    user_id: int
    employee_number: int
    provisioning: ProvisioningResult = field(default_factory=ProvisioningResult)

    def to_dict(self):
        return {
            'user_id': self.user_id,
            'employee_number': self.employee_number,
            'provisioning': self.provisioning.to_dict(),
        }


# ---------------------------------------------------------------------------
# Registration requests
# ---------------------------------------------------------------------------

def create_registration_request(*, first_name, last_name, email, password):
    email = normalize_email(email)
    if not email:
        raise ValidationError('Email is required')
    if not password:
        raise ValidationError('Password is required')

    if User.objects.filter(email__iexact=email, is_active=True).exists():
        raise ConflictError('An active user with this email already exists')

    if RegistrationRequest.objects.filter(email__iexact=email, status=RegistrationRequest.STATUS_PENDING).exists():
        raise ConflictError('A pending registration request already exists for this email')

    registration = RegistrationRequest.objects.create(
        first_name=(first_name or '').strip(),
        last_name=(last_name or '').strip(),
        email=email,
        encrypted_password=encrypt_value(password),
        status=RegistrationRequest.STATUS_PENDING,
    )
    logger.info("Registration request %s created for %s", registration.id, email)

    events.emit_verification_updated(registration.id, 'created')
    return registration


def list_registration_requests():
    return RegistrationRequest.objects.select_related('reviewed_by').order_by('-requested_at')


def get_assignment_options():
    """Roles and active companies (with their active branches) a reviewer can pick from."""
    roles = [
        {'id': str(role.id), 'name': role.name, 'color': role.color, 'priority': role.priority}
        for role in Role.objects.order_by('-priority', 'name')
    ]

    companies = []
    for company in Company.objects.filter(is_active=True).order_by('name'):
        tenant_db = ensure_tenant_database_loaded(company)
        branches = Branch.objects.using(tenant_db).filter(company_id=company.id, is_active=True).order_by('name')
        companies.append({
            'id': company.id,
            'name': company.name,
            'slug': company.slug,
            'company_code': company.company_code,
            'branches': [
                {
                    'id': str(branch.id),
                    'name': branch.name,
                    'hr_branch_id': branch.hr_branch_id,
                }
                for branch in branches
            ],
        })

    return {'roles': roles, 'companies': companies}


def reject_registration_request(*, reviewer, request_id, reason):
    reason = (reason or '').strip()
    if not reason:
        raise ValidationError('A rejection reason is required')

    now = timezone.now()
    updated = RegistrationRequest.objects.filter(
        id=request_id,
        status=RegistrationRequest.STATUS_PENDING,
    ).update(
        status=RegistrationRequest.STATUS_REJECTED,
        rejection_reason=reason,
        reviewed_by=reviewer,
        reviewed_at=now,
        updated_at=now,
    )
    if not updated:
        raise NotFoundError('Pending registration request not found')

    logger.info("Registration request %s rejected by %s", request_id, getattr(reviewer, 'id', None))
    events.emit_verification_updated(request_id, 'rejected')


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

def _validate_role_ids(role_ids):
    parsed = []
    for value in role_ids or []:
        try:
            role_id = value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        except (TypeError, ValueError):
            raise ValidationError('One or more selected roles are invalid')
        if role_id not in parsed:
            parsed.append(role_id)

    if Role.objects.filter(id__in=parsed).count() != len(parsed):
        raise ValidationError('One or more selected roles are invalid')
    return parsed


def _log_failures(user_id, failures, context, registration_request_id=None):
    if not failures:
        return
    ProvisioningFailureLog.objects.using('default').bulk_create([
        ProvisioningFailureLog(
            user_id=user_id,
            registration_request_id=registration_request_id,
            context=context,
            company_id=failure.company_id,
            company_name=failure.company_name,
            branch_id=failure.branch_id,
            branch_name=failure.branch_name,
            error=failure.error,
        )
        for failure in failures
    ])
    logger.warning("%s provisioning failure(s) recorded for user %s", len(failures), user_id)


def _run_pipeline(email, person, assignments, *, client, deadline, progress):
    """Identity -> allocation -> branch provisioning -> contact merge."""
    identity = resolve_or_create_identity(email)
    progress(events.STEP_IDENTITY, f'Resolved employee identity (#{identity.employee_number}).')

    allocation = allocate_number(identity, assignments, client=client, deadline=deadline, progress=progress)

    result = provision_branches(
        identity, allocation.employee_number, allocation.pin, assignments, person,
        client=client, deadline=deadline, progress=progress,
    )
    unify_contacts(
        identity, allocation.employee_number, result, assignments, person,
        client=client, progress=progress,
    )
    return identity, allocation, result


def _upsert_user(*, email, first_name, last_name, password, employee_number, user_key):
    user = User.objects.select_for_update().filter(email__iexact=email).first()
    if user is None:
        user = User(email=email)

    user.email = email
    user.first_name = first_name
    user.last_name = last_name
    user.employee_number = employee_number
    user.user_key = user_key
    user.is_active = True
    user.employment_status = User.EMPLOYMENT_ACTIVE
    user.set_password(password)
    user.save()
    return user


# ---------------------------------------------------------------------------
# Orchestrators
# ---------------------------------------------------------------------------

def approve_registration_request(
    *,
    reviewer,
    request_id,
    role_ids,
    company_assignments,
    resident_branch,
    reviewer_company_id=None,
    client=None,
    deadline=None,
):
    """
    Approve a pending registration: provision the person in every requested
    branch and create (or refresh) their global user.

    Branch failures do not stop the approval; they come back in
    result.provisioning.failures and are logged. A request that is approved
    or rejected meanwhile raises ConflictError and nothing local is written.
    """
    client = client or get_hr_backend_client()
    deadline = deadline or Deadline.from_settings()
    progress = events.ProgressReporter(reviewer_company_id, request_id, getattr(reviewer, 'id', None))

    progress(events.STEP_START, 'Starting approval process...')

    registration = RegistrationRequest.objects.filter(id=request_id).first()
    if registration is None:
        raise NotFoundError('Registration request not found')
    if registration.status != RegistrationRequest.STATUS_PENDING:
        raise ConflictError('Registration request is already resolved')

    progress(events.STEP_VALIDATE, 'Validating roles and company/branch assignments...')
    role_ids = _validate_role_ids(role_ids)
    assignments = resolve_company_assignments(company_assignments)
    if not resident_branch:
        raise ValidationError('A resident branch is required')
    resident = validate_resident_branch(assignments, resident_branch)

    password = decrypt_value(registration.encrypted_password)
    if not password:
        raise ValidationError('The registration password could not be read; ask the person to register again')

    email = normalize_email(registration.email)
    person = PersonDetails(
        email=email,
        first_name=registration.first_name.strip(),
        last_name=registration.last_name.strip(),
    )

    identity, allocation, result = _run_pipeline(
        email, person, assignments, client=client, deadline=deadline, progress=progress,
    )

    progress(events.STEP_USER, 'Creating/updating global user and assignments...')
    deadline.check('local commit')

    with transaction.atomic(using='default'):
        now = timezone.now()
        claimed = RegistrationRequest.objects.filter(
            id=request_id,
            status=RegistrationRequest.STATUS_PENDING,
        ).update(
            status=RegistrationRequest.STATUS_APPROVED,
            reviewed_by=reviewer,
            reviewed_at=now,
            approved_role_ids=[str(role_id) for role_id in role_ids],
            resident_company_id=resident.company_id,
            resident_branch_id=resident.branch_id,
            resident_branch_name=resident.branch_name,
            updated_at=now,
        )
        if not claimed:
            raise ConflictError('Registration request was already updated by another process')

        user = _upsert_user(
            email=email,
            first_name=person.first_name,
            last_name=person.last_name,
            password=password,
            employee_number=allocation.employee_number,
            user_key=identity.website_key,
        )
        RegistrationRequest.objects.filter(id=request_id).update(approved_user=user)

        UserRole.objects.filter(user=user).delete()
        UserRole.objects.bulk_create([
            UserRole(user=user, role_id=role_id, assigned_by=reviewer)
            for role_id in role_ids
        ])

        for assignment in assignments:
            upsert_local_employee(
                assignment.tenant_db,
                company_id=assignment.company_id,
                user=user,
                employee_number=allocation.employee_number,
                user_key=identity.website_key,
                role_ids=role_ids,
                assigned_by_id=getattr(reviewer, 'id', None),
            )

        write_snapshot(user.id, assignments, result.successful_branches, resident=resident)
        _log_failures(user.id, result.failures, ProvisioningFailureLog.CONTEXT_REGISTRATION, request_id)

        RegistrationRequestAssignment.objects.filter(registration_request_id=request_id).delete()
        RegistrationRequestAssignment.objects.bulk_create([
            RegistrationRequestAssignment(
                registration_request_id=request_id,
                company_id=assignment.company_id,
                company_name=assignment.company_name,
                branches=[
                    {
                        'branch_id': str(branch.branch_id),
                        'branch_name': branch.branch_name,
                        'external_branch_id': branch.external_branch_id,
                    }
                    for branch in assignment.branches
                ],
            )
            for assignment in assignments
        ])

    logger.info(
        "Registration request %s approved: user %s, employee number %s, %s branch(es), %s failure(s)",
        request_id, user.id, allocation.employee_number,
        len(result.successful_branches), len(result.failures),
    )

    progress(events.STEP_EMAIL, 'Sending registration approved email...')
    send_registration_approved_email(
        to=email,
        full_name=person.full_name,
        password=password,
        company_slug=assignments[0].company_slug,
    )

    progress(events.STEP_DONE, 'Approval completed successfully.')
    events.emit_verification_updated(request_id, 'approved', user_id=user.id)

    return ApprovalResult(
        request_id=registration.id,
        user_id=user.id,
        employee_number=allocation.employee_number,
        provisioning=result,
    )


def _carry_over_resident(user_id, assignments):
    current = get_current_resident(user_id)
    if not current:
        return None
    company_id, branch_id = current
    try:
        return validate_resident_branch(assignments, {'company_id': company_id, 'branch_id': branch_id})
    except ValidationError:
        # no longer assigned there
        return None


def assign_company_branches(
    *,
    user_id,
    company_assignments,
    resident_branch=None,
    assigned_by=None,
    client=None,
    deadline=None,
):
    """Re-provision an existing active user into a new company/branch set."""
    client = client or get_hr_backend_client()
    deadline = deadline or Deadline.from_settings()
    progress = events.ProgressReporter()

    user = User.objects.filter(id=user_id).first()
    if user is None:
        raise NotFoundError('User not found')
    if not user.is_active or user.employment_status != User.EMPLOYMENT_ACTIVE:
        raise ValidationError('Only active users can be assigned to company branches')

    assignments = resolve_company_assignments(company_assignments)
    if resident_branch:
        resident = validate_resident_branch(assignments, resident_branch)
    else:
        resident = _carry_over_resident(user.id, assignments)

    email = normalize_email(user.email)
    person = PersonDetails(email=email, first_name=user.first_name, last_name=user.last_name)

    identity, allocation, result = _run_pipeline(
        email, person, assignments, client=client, deadline=deadline, progress=progress,
    )

    deadline.check('local commit')

    with transaction.atomic(using='default'):
        User.objects.filter(id=user.id).update(
            employee_number=allocation.employee_number,
            user_key=identity.website_key,
            updated_at=timezone.now(),
        )
        user.refresh_from_db()

        for assignment in assignments:
            upsert_local_employee(
                assignment.tenant_db,
                company_id=assignment.company_id,
                user=user,
                employee_number=allocation.employee_number,
                user_key=identity.website_key,
            )

        write_snapshot(user.id, assignments, result.successful_branches, resident=resident)
        _log_failures(user.id, result.failures, ProvisioningFailureLog.CONTEXT_ASSIGNMENT)

    logger.info(
        "Company branches assigned to user %s by %s: %s branch(es), %s failure(s)",
        user.id, getattr(assigned_by, 'id', None),
        len(result.successful_branches), len(result.failures),
    )

    return AssignmentResult(
        user_id=user.id,
        employee_number=allocation.employee_number,
        provisioning=result,
    )
