from django.conf import settings
from django.db import models
from django.utils import timezone


class EmployeeIdentity(models.Model):
    """
    One row per normalized email, shared by every tenant.

    website_key never changes once written. employee_number only moves
    forward and deliberately carries no unique constraint: uniqueness is
    checked against the HR backend during allocation.
    """

    email = models.EmailField(unique=True)
    employee_number = models.PositiveIntegerField(db_index=True)
    website_key = models.CharField(max_length=64, unique=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = 'employee_identities'
        verbose_name = 'Employee Identity'
        verbose_name_plural = 'Employee Identities'

    def __str__(self):
        return f"{self.email} #{self.employee_number}"


class UserCompanyAccess(models.Model):
    """Company-level access snapshot, rebuilt on every provisioning run"""

    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='company_access')
    company = models.ForeignKey('accounts.Company', on_delete=models.CASCADE, related_name='user_access')
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'user_company_access'
        unique_together = [['user', 'company']]

    def __str__(self):
        return f"{self.user_id} -> company {self.company_id}"


class UserCompanyBranch(models.Model):
    """Branch assignment snapshot; only branches the HR backend accepted"""

    ASSIGNMENT_RESIDENT = 'resident'
    ASSIGNMENT_BORROW = 'borrow'

    ASSIGNMENT_TYPE_CHOICES = [
        (ASSIGNMENT_RESIDENT, 'Resident'),
        (ASSIGNMENT_BORROW, 'Borrow'),
    ]

    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='company_branches')
    company = models.ForeignKey('accounts.Company', on_delete=models.CASCADE, related_name='user_branches')
    branch_id = models.UUIDField()
    branch_name = models.CharField(max_length=255)
    external_branch_id = models.IntegerField(help_text='Company id of the branch in the HR backend')
    assignment_type = models.CharField(max_length=20, choices=ASSIGNMENT_TYPE_CHOICES, default=ASSIGNMENT_BORROW)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'user_company_branches'
        unique_together = [['user', 'company', 'branch_id']]
        ordering = ['company_id', 'branch_name']

    def __str__(self):
        return f"{self.user_id} -> {self.branch_name} ({self.assignment_type})"


class ProvisioningFailureLog(models.Model):
    """Branches (or merge steps) the HR backend did not accept"""

    CONTEXT_REGISTRATION = 'registration'
    CONTEXT_ASSIGNMENT = 'assignment'

    CONTEXT_CHOICES = [
        (CONTEXT_REGISTRATION, 'Registration approval'),
        (CONTEXT_ASSIGNMENT, 'Company/branch assignment'),
    ]

    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='provisioning_failures')
    registration_request = models.ForeignKey(
        'accounts.RegistrationRequest',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='provisioning_failures',
    )
    context = models.CharField(max_length=20, choices=CONTEXT_CHOICES)
    company = models.ForeignKey('accounts.Company', on_delete=models.SET_NULL, null=True, blank=True, related_name='+')
    company_name = models.CharField(max_length=255)
    branch_id = models.UUIDField(null=True, blank=True)
    branch_name = models.CharField(max_length=255, blank=True, default='')
    error = models.TextField()
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'provisioning_failure_logs'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['user', 'created_at'], name='provisioning_fail_user_idx'),
        ]

    def __str__(self):
        return f"{self.company_name}/{self.branch_name}: {self.error[:60]}"
