import logging

from django.utils.decorators import method_decorator
from django_ratelimit.decorators import ratelimit
from rest_framework import permissions, status
from rest_framework.views import APIView

from accounts.permissions import IsAdmin
from accounts.utils import api_response

from . import services
from .exceptions import ProvisioningError
from .serializers import (
    ApproveRegistrationSerializer, AssignCompanyBranchesSerializer,
    CreateRegistrationRequestSerializer, RegistrationRequestSerializer,
    RejectRegistrationSerializer,
)

logger = logging.getLogger(__name__)


def error_response(exc):
    return api_response(
        success=False,
        message=exc.message,
        errors=exc.errors,
        status=exc.status_code,
    )


def _reviewer_company_id(request):
    """Company whose reviewers watch the approval progress (X-Company-Id header)."""
    value = request.headers.get('X-Company-Id')
    try:
        return int(value) if value else None
    except ValueError:
        return None


@method_decorator(ratelimit(key='ip', rate='5/h', method='POST'), name='dispatch')
class CreateRegistrationRequestView(APIView):
    """Public self-registration"""

    permission_classes = [permissions.AllowAny]
    authentication_classes = []

    def post(self, request):
        serializer = CreateRegistrationRequestSerializer(data=request.data)
        if not serializer.is_valid():
            return api_response(
                success=False,
                message='Failed to submit registration.',
                errors=serializer.errors,
                status=status.HTTP_400_BAD_REQUEST
            )

        data = serializer.validated_data
        try:
            services.create_registration_request(
                first_name=data['first_name'],
                last_name=data['last_name'],
                email=data['email'],
                password=data['password'],
            )
        except ProvisioningError as e:
            return error_response(e)

        return api_response(
            success=True,
            message='Registration submitted. You will receive an email once it is reviewed.',
            status=status.HTTP_201_CREATED
        )


class RegistrationRequestListView(APIView):
    permission_classes = [IsAdmin]

    def get(self, request):
        registrations = services.list_registration_requests().prefetch_related('assignments')
        status_filter = request.query_params.get('status')
        if status_filter:
            registrations = registrations.filter(status=status_filter)

        return api_response(
            success=True,
            message='Registration requests retrieved successfully.',
            data=RegistrationRequestSerializer(registrations, many=True).data,
        )


class AssignmentOptionsView(APIView):
    permission_classes = [IsAdmin]

    def get(self, request):
        return api_response(
            success=True,
            message='Assignment options retrieved successfully.',
            data=services.get_assignment_options(),
        )


class ApproveRegistrationRequestView(APIView):
    """Approve a registration and provision the employee in the HR backend"""

    permission_classes = [IsAdmin]

    def post(self, request, pk):
        serializer = ApproveRegistrationSerializer(data=request.data)
        if not serializer.is_valid():
            return api_response(
                success=False,
                message='Invalid approval data.',
                errors=serializer.errors,
                status=status.HTTP_400_BAD_REQUEST
            )

        data = serializer.validated_data
        try:
            result = services.approve_registration_request(
                reviewer=request.user,
                request_id=pk,
                role_ids=data['role_ids'],
                company_assignments=data['company_assignments'],
                resident_branch=data['resident_branch'],
                reviewer_company_id=_reviewer_company_id(request),
            )
        except ProvisioningError as e:
            return error_response(e)

        if result.provisioning.has_failures:
            message = 'Registration approved. Some branches could not be provisioned.'
        else:
            message = 'Registration approved successfully.'

        return api_response(success=True, message=message, data=result.to_dict())


class RejectRegistrationRequestView(APIView):
    permission_classes = [IsAdmin]

    def post(self, request, pk):
        serializer = RejectRegistrationSerializer(data=request.data)
        if not serializer.is_valid():
            return api_response(
                success=False,
                message='A rejection reason is required.',
                errors=serializer.errors,
                status=status.HTTP_400_BAD_REQUEST
            )

        try:
            services.reject_registration_request(
                reviewer=request.user,
                request_id=pk,
                reason=serializer.validated_data['reason'],
            )
        except ProvisioningError as e:
            return error_response(e)

        return api_response(success=True, message='Registration rejected.')


class UserCompanyBranchesView(APIView):
    """Replace the company/branch assignments of an existing user"""

    permission_classes = [IsAdmin]

    def put(self, request, pk):
        serializer = AssignCompanyBranchesSerializer(data=request.data)
        if not serializer.is_valid():
            return api_response(
                success=False,
                message='Invalid assignment data.',
                errors=serializer.errors,
                status=status.HTTP_400_BAD_REQUEST
            )

        data = serializer.validated_data
        try:
            result = services.assign_company_branches(
                user_id=pk,
                company_assignments=data['company_assignments'],
                resident_branch=data.get('resident_branch'),
                assigned_by=request.user,
            )
        except ProvisioningError as e:
            return error_response(e)

        return api_response(
            success=True,
            message='Company branches updated.',
            data=result.to_dict(),
        )
