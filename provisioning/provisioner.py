import logging
import uuid
from dataclasses import asdict, dataclass, field
from typing import List

from .barcodes import format_barcode, format_employee_display_name

logger = logging.getLogger(__name__)

CONTACT_MERGE_ERROR_PREFIX = 'Contact merge skipped: '


@dataclass(frozen=True)
class PersonDetails:
    email: str
    first_name: str
    last_name: str

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class SuccessfulBranch:
    company_id: int
    branch_id: uuid.UUID
    branch_name: str
    external_branch_id: int


@dataclass
class BranchFailure:
    company_id: int
    company_name: str
    branch_id: uuid.UUID
    branch_name: str
    error: str


@dataclass
class ProvisioningResult:
    successful_branches: List[SuccessfulBranch] = field(default_factory=list)
    failures: List[BranchFailure] = field(default_factory=list)

    @property
    def has_failures(self):
        return bool(self.failures)

    def to_dict(self):
        def serialize(item):
            data = asdict(item)
            data['branch_id'] = str(data['branch_id']) if data['branch_id'] is not None else None
            return data

        return {
            'successful_branches': [serialize(item) for item in self.successful_branches],
            'failures': [serialize(item) for item in self.failures],
        }


def _error_message(exc):
    return str(exc) or exc.__class__.__name__ or 'Failed to create or verify HR employee'


def provision_branches(identity, employee_number, pin, assignments, person, *, client, deadline, progress=None):
    """
    Make sure an HR employee record exists in every requested branch.

    Branches are independent: an error in one is recorded as a failure and
    the loop moves on. Only the deadline stops the loop.
    """
    result = ProvisioningResult()
    total = sum(len(assignment.branches) for assignment in assignments)
    processed = 0

    if progress:
        progress('employees', f'Creating/updating HR employees in {total} selected branch(es)...')

    for assignment in assignments:
        for branch in assignment.branches:
            deadline.check(f'branch {branch.branch_name}')
            try:
                client.upsert_employee(
                    company_id=branch.external_branch_id,
                    name=format_employee_display_name(
                        branch.external_branch_id, employee_number, person.first_name, person.last_name,
                    ),
                    work_email=person.email,
                    pin=pin,
                    barcode=format_barcode(assignment.company_code, branch.external_branch_id, employee_number),
                    website_key=identity.website_key,
                    update_existing=False,
                    deadline=deadline,
                )
                result.successful_branches.append(SuccessfulBranch(
                    company_id=assignment.company_id,
                    branch_id=branch.branch_id,
                    branch_name=branch.branch_name,
                    external_branch_id=branch.external_branch_id,
                ))
            except Exception as e:
                logger.exception(
                    "HR employee provisioning failed for %s in %s / %s",
                    person.email, assignment.company_name, branch.branch_name,
                )
                result.failures.append(BranchFailure(
                    company_id=assignment.company_id,
                    company_name=assignment.company_name,
                    branch_id=branch.branch_id,
                    branch_name=branch.branch_name,
                    error=_error_message(e),
                ))

            processed += 1
            if progress:
                progress('employees', (
                    f'Processed branch {processed}/{total} '
                    f'({assignment.company_name} - HR #{branch.external_branch_id}).'
                ))

    return result


def unify_contacts(identity, employee_number, result, assignments, person, *, client, progress=None):
    """
    Merge the person's HR contacts under the first successful branch.
    A failure is recorded on the result; it never raises.
    """
    if not result.successful_branches:
        return None

    anchor = result.successful_branches[0]
    if progress:
        progress('merge', 'Merging HR contacts into one global contact...')

    try:
        return client.merge_contacts_by_email(
            email=person.email,
            main_company_id=anchor.external_branch_id,
            website_key=identity.website_key,
            display_name=format_employee_display_name(
                anchor.external_branch_id, employee_number, person.first_name, person.last_name,
            ),
        )
    except Exception as e:
        company_name = next(
            (item.company_name for item in assignments if item.company_id == anchor.company_id),
            'Unknown company',
        )
        result.failures.append(BranchFailure(
            company_id=anchor.company_id,
            company_name=company_name,
            branch_id=anchor.branch_id,
            branch_name=anchor.branch_name,
            error=f'{CONTACT_MERGE_ERROR_PREFIX}{_error_message(e)}',
        ))
        logger.warning(
            "Failed to unify HR contacts for %s (main company %s); continuing: %s",
            person.email, anchor.external_branch_id, e,
        )
        return None
