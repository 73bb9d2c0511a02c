from django.db import models
# Company and user ids are plain integers: these tables live in the tenant
# database and cannot hold foreign keys into the master database.
import uuid


class Branch(models.Model):
    """Branch/Location of a company"""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    company_id = models.IntegerField(db_index=True, help_text='ID of the company (from main database)')
    name = models.CharField(max_length=255)
    code = models.CharField(max_length=50, blank=True, default='', help_text='Branch code/identifier')
    hr_branch_id = models.IntegerField(null=True, blank=True,
        help_text='Company id of this branch in the HR backend')
    address = models.TextField(blank=True, default='')
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'branches'
        verbose_name = 'Branch'
        verbose_name_plural = 'Branches'
        ordering = ['name']

    def __str__(self):
        return f"{self.name} - Company ID: {self.company_id}"


class Employee(models.Model):
    """Local user record of a global user inside one company"""

    STATUS_ACTIVE = 'active'
    STATUS_RESIGNED = 'resigned'
    STATUS_INACTIVE = 'inactive'

    EMPLOYMENT_STATUS_CHOICES = [
        (STATUS_ACTIVE, 'Active'),
        (STATUS_RESIGNED, 'Resigned'),
        (STATUS_INACTIVE, 'Inactive'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    company_id = models.IntegerField(db_index=True, help_text='ID of the company (from main database)')
    user_id = models.IntegerField(db_index=True, help_text='ID of the global user (from main database)')
    email = models.EmailField(db_index=True)
    first_name = models.CharField(max_length=150)
    last_name = models.CharField(max_length=150)
    employee_number = models.PositiveIntegerField(null=True, blank=True)
    user_key = models.CharField(max_length=64, null=True, blank=True)
    employment_status = models.CharField(max_length=20, choices=EMPLOYMENT_STATUS_CHOICES, default=STATUS_ACTIVE)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'employees'
        unique_together = [['company_id', 'user_id']]
        ordering = ['last_name', 'first_name']

    def __str__(self):
        return f"{self.first_name} {self.last_name} ({self.email})"


class EmployeeRole(models.Model):
    """Role assignment mirrored from the master role catalog"""

    employee = models.ForeignKey(Employee, on_delete=models.CASCADE, related_name='roles')
    role_id = models.UUIDField(help_text='ID of the role (from main database)')
    assigned_by_id = models.IntegerField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'employee_roles'
        unique_together = [['employee', 'role_id']]

    def __str__(self):
        return f"{self.employee_id} -> {self.role_id}"
