from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin
from .models import User, Company, Role, UserRole, RegistrationRequest, RegistrationRequestAssignment


@admin.register(User)
class UserAdmin(BaseUserAdmin):
    """Admin interface for global users"""

    list_display = ('email', 'first_name', 'last_name', 'employee_number', 'employment_status', 'is_admin', 'is_active', 'created_at')
    list_filter = ('is_admin', 'is_active', 'employment_status', 'created_at')
    search_fields = ('email', 'first_name', 'last_name', 'user_key')
    ordering = ('-created_at',)

    fieldsets = (
        (None, {'fields': ('email', 'password')}),
        ('Personal Info', {'fields': ('first_name', 'last_name')}),
        ('Employment', {'fields': ('employee_number', 'user_key', 'employment_status')}),
        ('Permissions', {'fields': ('is_active', 'is_admin', 'is_staff', 'is_superuser', 'groups', 'user_permissions')}),
        ('Important dates', {'fields': ('last_login', 'created_at', 'updated_at')}),
    )

    add_fieldsets = (
        (None, {
            'classes': ('wide',),
            'fields': ('email', 'password1', 'password2', 'is_admin'),
        }),
    )

    readonly_fields = ('employee_number', 'user_key', 'created_at', 'updated_at')


@admin.register(Company)
class CompanyAdmin(admin.ModelAdmin):
    list_display = ('name', 'slug', 'company_code', 'is_active', 'database_created', 'created_at')
    list_filter = ('is_active', 'database_created')
    search_fields = ('name', 'slug', 'company_code')
    prepopulated_fields = {'slug': ('name',)}
    readonly_fields = ('database_created_at', 'created_at', 'updated_at')


@admin.register(Role)
class RoleAdmin(admin.ModelAdmin):
    list_display = ('name', 'priority', 'is_system', 'color')
    search_fields = ('name',)


@admin.register(UserRole)
class UserRoleAdmin(admin.ModelAdmin):
    list_display = ('user', 'role', 'assigned_by', 'created_at')
    search_fields = ('user__email', 'role__name')


class RegistrationRequestAssignmentInline(admin.TabularInline):
    model = RegistrationRequestAssignment
    extra = 0
    readonly_fields = ('company', 'company_name', 'branches', 'created_at')
    can_delete = False


@admin.register(RegistrationRequest)
class RegistrationRequestAdmin(admin.ModelAdmin):
    """Read-only view; approvals go through the API so the HR backend stays in sync"""

    list_display = ('email', 'first_name', 'last_name', 'status', 'requested_at', 'reviewed_by', 'reviewed_at')
    list_filter = ('status', 'requested_at')
    search_fields = ('email', 'first_name', 'last_name')
    ordering = ('-requested_at',)
    exclude = ('encrypted_password',)
    inlines = [RegistrationRequestAssignmentInline]

    def has_change_permission(self, request, obj=None):
        return False
