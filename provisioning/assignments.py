"""Validation of requested company/branch assignments. Nothing here writes."""
import uuid
from dataclasses import dataclass, field
from typing import List, Optional

from accounts.database_utils import ensure_tenant_database_loaded
from accounts.models import Company
from employees.models import Branch

from .barcodes import normalize_company_code
from .exceptions import ValidationError


@dataclass(frozen=True)
class ResolvedBranch:
    branch_id: uuid.UUID
    branch_name: str
    external_branch_id: int


@dataclass
class ResolvedAssignment:
    company_id: int
    company_name: str
    company_slug: str
    company_code: str
    tenant_db: str
    branches: List[ResolvedBranch] = field(default_factory=list)
    # every active branch of the company, for the barcode scan
    known_external_branch_ids: List[int] = field(default_factory=list)


@dataclass(frozen=True)
class ResidentBranch:
    company_id: int
    company_name: str
    branch_id: uuid.UUID
    branch_name: str


def _parse_uuid(value, label):
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise ValidationError(f'Invalid {label}: {value}')


def _parse_company_id(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'Invalid company id: {value}')


def _dedupe(values):
    seen = []
    for value in values:
        if value not in seen:
            seen.append(value)
    return seen


def resolve_company_assignments(company_assignments) -> List[ResolvedAssignment]:
    """
    Turn [{company_id, branch_ids}] into ResolvedAssignments, in request order.
    Raises ValidationError on the first problem found.
    """
    if not company_assignments:
        raise ValidationError('At least one company assignment is required')

    requested = []
    seen_companies = set()
    for item in company_assignments:
        company_id = _parse_company_id(item.get('company_id'))
        if company_id in seen_companies:
            raise ValidationError(f'Duplicate company assignment: {company_id}')
        seen_companies.add(company_id)

        branch_ids = _dedupe([_parse_uuid(value, 'branch id') for value in item.get('branch_ids') or []])
        if not branch_ids:
            raise ValidationError('At least one branch is required for every selected company')
        requested.append((company_id, branch_ids))

    resolved = []
    for company_id, branch_ids in requested:
        company = Company.objects.using('default').filter(id=company_id, is_active=True).first()
        if not company:
            raise ValidationError(f'Selected company is invalid or inactive: {company_id}')

        company_code = normalize_company_code(company.company_code)
        if not company_code:
            raise ValidationError(f'Company "{company.name}" is missing a company code')

        tenant_db = ensure_tenant_database_loaded(company)
        active_branches = list(Branch.objects.using(tenant_db).filter(company_id=company.id, is_active=True))
        by_id = {branch.id: branch for branch in active_branches}

        branches = []
        for branch_id in branch_ids:
            branch = by_id.get(branch_id)
            if branch is None:
                raise ValidationError(f'One or more selected branches are invalid for company "{company.name}"')
            if not branch.hr_branch_id or branch.hr_branch_id < 1:
                raise ValidationError(
                    f'Branch "{branch.name}" in "{company.name}" is missing a valid HR backend branch id'
                )
            branches.append(ResolvedBranch(
                branch_id=branch.id,
                branch_name=branch.name,
                external_branch_id=branch.hr_branch_id,
            ))

        known = sorted({branch.hr_branch_id for branch in active_branches if branch.hr_branch_id and branch.hr_branch_id >= 1})

        resolved.append(ResolvedAssignment(
            company_id=company.id,
            company_name=company.name,
            company_slug=company.slug,
            company_code=company_code,
            tenant_db=tenant_db,
            branches=branches,
            known_external_branch_ids=known,
        ))

    return resolved


def validate_resident_branch(assignments, resident_branch) -> Optional[ResidentBranch]:
    """The resident branch must be one of the requested branches."""
    if not resident_branch:
        return None

    company_id = _parse_company_id(resident_branch.get('company_id'))
    branch_id = _parse_uuid(resident_branch.get('branch_id'), 'resident branch id')

    assignment = next((item for item in assignments if item.company_id == company_id), None)
    if assignment is None:
        raise ValidationError('Resident company must be included in selected company assignments')

    branch = next((item for item in assignment.branches if item.branch_id == branch_id), None)
    if branch is None:
        raise ValidationError('Resident branch must be included in selected branches of resident company')

    return ResidentBranch(
        company_id=assignment.company_id,
        company_name=assignment.company_name,
        branch_id=branch.branch_id,
        branch_name=branch.branch_name,
    )
