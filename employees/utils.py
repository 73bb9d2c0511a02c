"""Tenant-side helpers for local employee records."""
import logging

from django.db import transaction
from django.db.models import Max

from accounts.database_utils import iter_active_tenants

from .models import Employee, EmployeeRole

logger = logging.getLogger(__name__)


def find_legacy_identity(email):
    """
    Search every active tenant for a local employee record carrying an
    (employee_number, user_key) pair for this email.
    Returns (employee_number, user_key) or None.
    """
    for company, tenant_db in iter_active_tenants():
        try:
            employee = (
                Employee.objects.using(tenant_db)
                .filter(company_id=company.id, email__iexact=email)
                .exclude(employee_number__isnull=True)
                .exclude(user_key__isnull=True)
                .exclude(user_key='')
                .order_by('created_at')
                .first()
            )
        except Exception as e:
            logger.warning("Error searching tenant database for company %s: %s", company.id, e)
            continue
        if employee:
            return employee.employee_number, employee.user_key
    return None


def max_tenant_employee_number():
    """Highest employee number recorded in any active tenant database."""
    highest = 0
    seen_aliases = set()
    for company, tenant_db in iter_active_tenants():
        if tenant_db in seen_aliases:
            continue
        seen_aliases.add(tenant_db)
        try:
            value = Employee.objects.using(tenant_db).aggregate(max_number=Max('employee_number'))['max_number']
        except Exception as e:
            logger.warning("Error reading employee numbers for company %s: %s", company.id, e)
            continue
        highest = max(highest, value or 0)
    return highest


def upsert_local_employee(tenant_db, *, company_id, user, employee_number, user_key, role_ids=None, assigned_by_id=None):
    """
    Create or refresh the local record of a global user in one company.
    When role_ids is given, the tenant role assignments are replaced with it.
    """
    with transaction.atomic(using=tenant_db):
        employee, created = Employee.objects.using(tenant_db).update_or_create(
            company_id=company_id,
            user_id=user.id,
            defaults={
                'email': user.email,
                'first_name': user.first_name,
                'last_name': user.last_name,
                'employee_number': employee_number,
                'user_key': user_key,
                'employment_status': Employee.STATUS_ACTIVE,
                'is_active': True,
            },
        )

        if role_ids is not None:
            EmployeeRole.objects.using(tenant_db).filter(employee=employee).delete()
            EmployeeRole.objects.using(tenant_db).bulk_create([
                EmployeeRole(employee=employee, role_id=role_id, assigned_by_id=assigned_by_id)
                for role_id in role_ids
            ])

    logger.info(
        "%s local employee %s for user %s in company %s",
        'Created' if created else 'Updated', employee.id, user.id, company_id,
    )
    return employee
