from django.contrib.auth.models import AbstractUser, BaseUserManager
from django.db import models
import uuid


class CustomUserManager(BaseUserManager):
    """Custom user manager where email is the unique identifier"""

    def create_user(self, email, password=None, **extra_fields):
        """Create and save a global user with the given email and password"""
        if not email:
            raise ValueError('The Email field must be set')
        email = self.normalize_email(email).strip().lower()
        user = self.model(email=email, **extra_fields)
        user.set_password(password)
        user.save(using=self._db)
        return user

    def create_superuser(self, email, password=None, **extra_fields):
        """Create and save a superuser with the given email and password"""
        extra_fields.setdefault('is_staff', True)
        extra_fields.setdefault('is_superuser', True)
        extra_fields.setdefault('is_active', True)
        extra_fields.setdefault('is_admin', True)

        if extra_fields.get('is_staff') is not True:
            raise ValueError('Superuser must have is_staff=True.')
        if extra_fields.get('is_superuser') is not True:
            raise ValueError('Superuser must have is_superuser=True.')

        return self.create_user(email, password, **extra_fields)


class User(AbstractUser):
    """Global user shared by every tenant company (master database)"""

    EMPLOYMENT_ACTIVE = 'active'
    EMPLOYMENT_RESIGNED = 'resigned'
    EMPLOYMENT_INACTIVE = 'inactive'

    EMPLOYMENT_STATUS_CHOICES = [
        (EMPLOYMENT_ACTIVE, 'Active'),
        (EMPLOYMENT_RESIGNED, 'Resigned'),
        (EMPLOYMENT_INACTIVE, 'Inactive'),
    ]

    username = None  # Remove username field
    email = models.EmailField(unique=True, db_index=True)
    is_admin = models.BooleanField(default=False, help_text='Designates whether the user may manage registrations and assignments')
    employee_number = models.PositiveIntegerField(null=True, blank=True, db_index=True,
        help_text='Global employee number mirrored from the employee identity')
    user_key = models.CharField(max_length=64, null=True, blank=True, unique=True,
        help_text='Correlation key shared with the HR backend (x_website_key)')
    employment_status = models.CharField(max_length=20, choices=EMPLOYMENT_STATUS_CHOICES, default=EMPLOYMENT_ACTIVE)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    USERNAME_FIELD = 'email'
    REQUIRED_FIELDS = []

    objects = CustomUserManager()

    class Meta:
        db_table = 'users'
        verbose_name = 'User'
        verbose_name_plural = 'Users'

    def __str__(self):
        return self.email

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}".strip()


class Company(models.Model):
    """Tenant company. Each company owns its own database once provisioned."""

    name = models.CharField(max_length=255)
    slug = models.SlugField(max_length=100, unique=True)
    company_code = models.CharField(max_length=20, unique=True, null=True, blank=True,
        help_text='Barcode prefix used for HR backend employee records')
    is_active = models.BooleanField(default=True)

    # Database Information (for multi-tenancy)
    database_name = models.CharField(max_length=100, unique=True, null=True, blank=True, help_text='Tenant database name')
    database_created = models.BooleanField(default=False, help_text='Whether tenant database has been created')
    database_created_at = models.DateTimeField(null=True, blank=True, help_text='When the tenant database was created')

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'companies'
        verbose_name = 'Company'
        verbose_name_plural = 'Companies'
        ordering = ['name']

    def __str__(self):
        return f"{self.name} ({self.company_code or 'no code'})"

    def get_database_alias(self):
        """Get the database alias for this company's tenant database"""
        return f"tenant_{self.id}" if self.database_created and self.database_name else 'default'


class Role(models.Model):
    """Global role; assignments are mirrored into each tenant database"""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=100, unique=True)
    description = models.TextField(blank=True, default='')
    color = models.CharField(max_length=20, blank=True, null=True)
    is_system = models.BooleanField(default=False)
    priority = models.IntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'roles'
        ordering = ['-priority', 'name']

    def __str__(self):
        return self.name


class UserRole(models.Model):
    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name='user_roles')
    role = models.ForeignKey(Role, on_delete=models.CASCADE, related_name='user_roles')
    assigned_by = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True, related_name='+')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'user_roles'
        unique_together = [['user', 'role']]

    def __str__(self):
        return f"{self.user_id} -> {self.role_id}"


class RegistrationRequest(models.Model):
    """Self-registration awaiting review. pending -> approved | rejected"""

    STATUS_PENDING = 'pending'
    STATUS_APPROVED = 'approved'
    STATUS_REJECTED = 'rejected'

    STATUS_CHOICES = [
        (STATUS_PENDING, 'Pending'),
        (STATUS_APPROVED, 'Approved'),
        (STATUS_REJECTED, 'Rejected'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    first_name = models.CharField(max_length=100)
    last_name = models.CharField(max_length=100)
    email = models.EmailField(db_index=True)
    encrypted_password = models.TextField()
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_PENDING, db_index=True)
    rejection_reason = models.TextField(blank=True, null=True)
    requested_at = models.DateTimeField(auto_now_add=True)
    reviewed_by = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True, related_name='reviewed_registrations')
    reviewed_at = models.DateTimeField(null=True, blank=True)

    # Filled on approval
    approved_role_ids = models.JSONField(default=list, blank=True)
    approved_user = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True, related_name='+')
    resident_company = models.ForeignKey(Company, on_delete=models.SET_NULL, null=True, blank=True, related_name='+')
    resident_branch_id = models.UUIDField(null=True, blank=True)
    resident_branch_name = models.CharField(max_length=255, blank=True, null=True)

    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'registration_requests'
        ordering = ['-requested_at']

    def __str__(self):
        return f"{self.email} ({self.status})"

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}".strip()


class RegistrationRequestAssignment(models.Model):
    """Record of the company/branch set an approved request was granted"""

    registration_request = models.ForeignKey(RegistrationRequest, on_delete=models.CASCADE, related_name='assignments')
    company = models.ForeignKey(Company, on_delete=models.CASCADE, related_name='+')
    company_name = models.CharField(max_length=255)
    branches = models.JSONField(default=list, help_text='[{branch_id, branch_name, external_branch_id}]')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'registration_request_company_assignments'
        unique_together = [['registration_request', 'company']]

    def __str__(self):
        return f"{self.registration_request_id} -> {self.company_name}"
