from io import StringIO
from unittest import mock

from django.core import mail
from django.core.management import call_command
from django.test import TestCase, override_settings

from accounts import crypto
from accounts.database_router import TenantDatabaseRouter
from accounts.database_utils import get_tenant_database_alias, iter_active_tenants
from accounts.models import Company, Role, User
from accounts.rbac_defaults import DEFAULT_ROLES
from accounts.utils import api_response, normalize_email, send_registration_approved_email
from employees.models import Branch
from provisioning.models import EmployeeIdentity


class UserManagerTests(TestCase):
    def test_email_is_normalized(self):
        user = User.objects.create_user(email='  Mixed@Example.COM', password='pass')
        self.assertEqual(user.email, 'mixed@example.com')
        self.assertTrue(user.check_password('pass'))
        self.assertIsNone(user.employee_number)

    def test_superuser_is_admin(self):
        user = User.objects.create_superuser(email='root@example.com', password='pass')
        self.assertTrue(user.is_admin)
        self.assertTrue(user.is_staff)

    def test_email_required(self):
        with self.assertRaises(ValueError):
            User.objects.create_user(email='', password='pass')


class CryptoTests(TestCase):
    def setUp(self):
        crypto.get_cipher.cache_clear()
        self.addCleanup(crypto.get_cipher.cache_clear)

    def test_round_trip(self):
        token = crypto.encrypt_value('s3cret!')
        self.assertNotEqual(token, 's3cret!')
        self.assertEqual(crypto.decrypt_value(token), 's3cret!')

    def test_invalid_token_returns_empty(self):
        self.assertEqual(crypto.decrypt_value('not-a-token'), '')
        self.assertEqual(crypto.decrypt_value(''), '')
        self.assertEqual(crypto.encrypt_value(None), '')


@override_settings(FRONTEND_URL='https://app.example.com/')
class RegistrationEmailTests(TestCase):
    def test_sends_credentials_with_company_login_link(self):
        sent = send_registration_approved_email(
            to='jane@example.com', full_name='Jane Doe', password='pw-123', company_slug='acme',
        )
        self.assertTrue(sent)
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, ['jane@example.com'])
        self.assertIn('https://app.example.com/acme/login', mail.outbox[0].body)
        self.assertIn('pw-123', mail.outbox[0].body)

    def test_send_failure_returns_false(self):
        with mock.patch('accounts.utils.send_mail', side_effect=ConnectionRefusedError('smtp down')):
            sent = send_registration_approved_email(to='jane@example.com', full_name='Jane', password='pw')
        self.assertFalse(sent)


class UtilsTests(TestCase):
    def test_normalize_email(self):
        self.assertEqual(normalize_email('  A@B.com '), 'a@b.com')
        self.assertEqual(normalize_email(None), '')

    def test_api_response_envelope(self):
        response = api_response(success=False, message='Nope', status=409)
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data, {'success': False, 'message': 'Nope', 'data': {}, 'errors': []})


class TenantRoutingTests(TestCase):
    def setUp(self):
        self.router = TenantDatabaseRouter()

    def test_master_models_stay_on_default(self):
        self.assertEqual(self.router.db_for_write(EmployeeIdentity, tenant_db='tenant_9'), 'default')
        self.assertEqual(self.router.db_for_read(Company), 'default')

    def test_tenant_models_follow_hint(self):
        self.assertEqual(self.router.db_for_read(Branch, tenant_db='tenant_3'), 'tenant_3')
        self.assertEqual(self.router.db_for_read(Branch), 'default')

    def test_tenant_databases_only_migrate_tenant_apps(self):
        self.assertTrue(self.router.allow_migrate('tenant_3', 'employees'))
        self.assertFalse(self.router.allow_migrate('tenant_3', 'provisioning'))
        self.assertTrue(self.router.allow_migrate('default', 'provisioning'))

    def test_alias_depends_on_database_state(self):
        pending = Company.objects.create(name='Acme', slug='acme', company_code='ACM')
        ready = Company(id=7, name='Beta', slug='beta', database_name='beta_db', database_created=True)
        self.assertEqual(get_tenant_database_alias(pending), 'default')
        self.assertEqual(get_tenant_database_alias(ready), 'tenant_7')
        self.assertEqual(get_tenant_database_alias(None), 'default')

    def test_iter_active_tenants_skips_inactive(self):
        active = Company.objects.create(name='Acme', slug='acme')
        Company.objects.create(name='Gone', slug='gone', is_active=False)
        self.assertEqual([company.id for company, _ in iter_active_tenants()], [active.id])


class SeedRolesCommandTests(TestCase):
    def test_seeds_once(self):
        out = StringIO()
        call_command('seed_roles', stdout=out)
        self.assertEqual(Role.objects.count(), len(DEFAULT_ROLES))
        call_command('seed_roles', stdout=out)
        self.assertEqual(Role.objects.count(), len(DEFAULT_ROLES))
        self.assertEqual(Role.objects.first().name, 'Administrator')


class MigrateTenantsCommandTests(TestCase):
    def test_nothing_to_migrate_without_company_databases(self):
        Company.objects.create(name='Acme', slug='acme', company_code='ACM')
        out = StringIO()
        call_command('migrate_tenants', stdout=out)
        self.assertIn('No company databases to migrate.', out.getvalue())
