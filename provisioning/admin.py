from django.contrib import admin
from .models import EmployeeIdentity, UserCompanyAccess, UserCompanyBranch, ProvisioningFailureLog


@admin.register(EmployeeIdentity)
class EmployeeIdentityAdmin(admin.ModelAdmin):
    list_display = ('email', 'employee_number', 'website_key', 'updated_at')
    search_fields = ('email', 'website_key')
    readonly_fields = ('email', 'employee_number', 'website_key', 'created_at', 'updated_at')

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(UserCompanyAccess)
class UserCompanyAccessAdmin(admin.ModelAdmin):
    list_display = ('user', 'company', 'is_active', 'updated_at')
    list_filter = ('is_active',)
    search_fields = ('user__email', 'company__name')


@admin.register(UserCompanyBranch)
class UserCompanyBranchAdmin(admin.ModelAdmin):
    list_display = ('user', 'company', 'branch_name', 'external_branch_id', 'assignment_type')
    list_filter = ('assignment_type',)
    search_fields = ('user__email', 'branch_name')


@admin.register(ProvisioningFailureLog)
class ProvisioningFailureLogAdmin(admin.ModelAdmin):
    list_display = ('user', 'context', 'company_name', 'branch_name', 'created_at')
    list_filter = ('context', 'created_at')
    search_fields = ('user__email', 'company_name', 'branch_name', 'error')
    readonly_fields = ('created_at',)
