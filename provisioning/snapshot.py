import logging

from django.db import transaction

from .models import UserCompanyAccess, UserCompanyBranch

logger = logging.getLogger(__name__)


def write_snapshot(user_id, assignments, successful_branches, *, resident=None):
    """
    Replace the user's company access and branch assignments.

    Access rows cover every assigned company; branch rows only the branches
    the HR backend accepted. Safe to call again with the same input.
    """
    resident_key = (resident.company_id, resident.branch_id) if resident else None

    with transaction.atomic(using='default'):
        UserCompanyAccess.objects.using('default').filter(user_id=user_id).delete()
        UserCompanyBranch.objects.using('default').filter(user_id=user_id).delete()

        UserCompanyAccess.objects.using('default').bulk_create([
            UserCompanyAccess(user_id=user_id, company_id=assignment.company_id, is_active=True)
            for assignment in assignments
        ])

        branch_rows = []
        for branch in successful_branches:
            if resident_key == (branch.company_id, branch.branch_id):
                assignment_type = UserCompanyBranch.ASSIGNMENT_RESIDENT
            else:
                assignment_type = UserCompanyBranch.ASSIGNMENT_BORROW
            branch_rows.append(UserCompanyBranch(
                user_id=user_id,
                company_id=branch.company_id,
                branch_id=branch.branch_id,
                branch_name=branch.branch_name,
                external_branch_id=branch.external_branch_id,
                assignment_type=assignment_type,
            ))
        UserCompanyBranch.objects.using('default').bulk_create(branch_rows)

    logger.info(
        "Snapshot for user %s: %s company access row(s), %s branch row(s)",
        user_id, len(assignments), len(branch_rows),
    )


def get_current_resident(user_id):
    """(company_id, branch_id) of the user's resident branch, or None."""
    row = (
        UserCompanyBranch.objects.using('default')
        .filter(user_id=user_id, assignment_type=UserCompanyBranch.ASSIGNMENT_RESIDENT)
        .values_list('company_id', 'branch_id')
        .first()
    )
    return tuple(row) if row else None
