from django.contrib import admin
from .models import Branch, Employee, EmployeeRole


@admin.register(Branch)
class BranchAdmin(admin.ModelAdmin):
    list_display = ['name', 'code', 'company_id', 'hr_branch_id', 'is_active']
    list_filter = ['is_active']
    search_fields = ['name', 'code']
    readonly_fields = ['id', 'created_at', 'updated_at']


class EmployeeRoleInline(admin.TabularInline):
    model = EmployeeRole
    extra = 0
    readonly_fields = ['role_id', 'assigned_by_id', 'created_at']


@admin.register(Employee)
class EmployeeAdmin(admin.ModelAdmin):
    list_display = ['email', 'first_name', 'last_name', 'company_id', 'employee_number', 'employment_status', 'is_active']
    list_filter = ['employment_status', 'is_active']
    search_fields = ['email', 'first_name', 'last_name', 'user_key']
    readonly_fields = ['id', 'user_id', 'employee_number', 'user_key', 'created_at', 'updated_at']
    inlines = [EmployeeRoleInline]
