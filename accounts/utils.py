import logging

from django.conf import settings
from django.core.mail import send_mail
from django.template.loader import render_to_string
from rest_framework.response import Response
from rest_framework.views import exception_handler

logger = logging.getLogger(__name__)


def api_response(success=True, message='', data=None, errors=None, status=200):
    """Wrap a payload in the {success, message, data, errors} envelope used by every endpoint"""
    return Response(
        {
            'success': success,
            'message': message,
            'data': {} if data is None else data,
            'errors': [] if errors is None else errors,
        },
        status=status,
    )


def custom_exception_handler(exc, context):
    """Re-shape DRF error responses into the api_response envelope"""
    response = exception_handler(exc, context)
    if response is None:
        return None

    payload = response.data
    message = 'An error occurred'
    errors = []
    if isinstance(payload, dict) and 'detail' in payload:
        message = str(payload['detail'])
    elif isinstance(payload, (dict, list)):
        errors = payload
    else:
        message = str(payload)

    response.data = {'success': False, 'message': message, 'data': None, 'errors': errors}
    return response


def normalize_email(email):
    return (email or '').strip().lower()


def build_login_link(company_slug=None):
    base = settings.FRONTEND_URL.rstrip('/')
    return f"{base}/{company_slug}/login" if company_slug else f"{base}/login"


def send_registration_approved_email(*, to, full_name, password, company_slug=None):
    """
    Email login credentials to a newly approved employee.

    Returns False instead of raising when delivery fails, approval has already committed by then.
    """
    context = {
        'full_name': full_name,
        'email': to,
        'password': password,
        'login_link': build_login_link(company_slug),
    }
    try:
        send_mail(
            subject='Your registration has been approved',
            message=render_to_string('emails/registration_approved.txt', context),
            from_email=settings.DEFAULT_FROM_EMAIL,
            recipient_list=[to],
            html_message=render_to_string('emails/registration_approved.html', context),
            fail_silently=False,
        )
    except Exception as exc:
        logger.error("Could not send registration approval email to %s: %s", to, exc)
        return False
    return True
