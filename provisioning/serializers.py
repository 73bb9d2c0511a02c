from django.contrib.auth.password_validation import validate_password
from rest_framework import serializers

from accounts.models import RegistrationRequest, RegistrationRequestAssignment


class CreateRegistrationRequestSerializer(serializers.Serializer):
    """Public self-registration form"""

    first_name = serializers.CharField(max_length=100)
    last_name = serializers.CharField(max_length=100)
    email = serializers.EmailField()
    password = serializers.CharField(write_only=True, validators=[validate_password])
    confirm_password = serializers.CharField(write_only=True)

    def validate(self, data):
        if data['password'] != data['confirm_password']:
            raise serializers.ValidationError({"confirm_password": "Passwords do not match."})
        return data


class RegistrationRequestAssignmentSerializer(serializers.ModelSerializer):
    class Meta:
        model = RegistrationRequestAssignment
        fields = ['company_id', 'company_name', 'branches']


class RegistrationRequestSerializer(serializers.ModelSerializer):
    """Registration request as shown to reviewers. Never exposes the password."""

    reviewed_by_name = serializers.SerializerMethodField()
    assignments = RegistrationRequestAssignmentSerializer(many=True, read_only=True)

    class Meta:
        model = RegistrationRequest
        fields = [
            'id', 'first_name', 'last_name', 'email', 'status', 'rejection_reason',
            'requested_at', 'reviewed_by', 'reviewed_by_name', 'reviewed_at',
            'approved_role_ids', 'approved_user', 'resident_company', 'resident_branch_id',
            'resident_branch_name', 'assignments',
        ]
        read_only_fields = fields

    def get_reviewed_by_name(self, obj):
        if obj.reviewed_by_id is None:
            return None
        return obj.reviewed_by.full_name or obj.reviewed_by.email


class CompanyAssignmentSerializer(serializers.Serializer):
    company_id = serializers.IntegerField(min_value=1)
    branch_ids = serializers.ListField(child=serializers.UUIDField(), allow_empty=False)


class ResidentBranchSerializer(serializers.Serializer):
    company_id = serializers.IntegerField(min_value=1)
    branch_id = serializers.UUIDField()


class ApproveRegistrationSerializer(serializers.Serializer):
    role_ids = serializers.ListField(child=serializers.UUIDField(), allow_empty=False)
    company_assignments = CompanyAssignmentSerializer(many=True, allow_empty=False)
    resident_branch = ResidentBranchSerializer()


class RejectRegistrationSerializer(serializers.Serializer):
    reason = serializers.CharField(max_length=1000, trim_whitespace=True)


class AssignCompanyBranchesSerializer(serializers.Serializer):
    company_assignments = CompanyAssignmentSerializer(many=True, allow_empty=False)
    resident_branch = ResidentBranchSerializer(required=False, allow_null=True)
