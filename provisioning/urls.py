from django.urls import path

from .views import (
    ApproveRegistrationRequestView, AssignmentOptionsView, CreateRegistrationRequestView,
    RegistrationRequestListView, RejectRegistrationRequestView, UserCompanyBranchesView,
)

app_name = 'provisioning'

urlpatterns = [
    path('registration/', CreateRegistrationRequestView.as_view(), name='registration-create'),
    path('employee-verifications/', RegistrationRequestListView.as_view(), name='registration-list'),
    path('employee-verifications/registration/assignment-options/', AssignmentOptionsView.as_view(), name='assignment-options'),
    path('employee-verifications/registration/<uuid:pk>/approve/', ApproveRegistrationRequestView.as_view(), name='registration-approve'),
    path('employee-verifications/registration/<uuid:pk>/reject/', RejectRegistrationRequestView.as_view(), name='registration-reject'),
    path('users/<int:pk>/company-branches/', UserCompanyBranchesView.as_view(), name='user-company-branches'),
]
