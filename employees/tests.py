import uuid

from django.test import TestCase

from accounts.models import Company, User
from employees.models import Employee, EmployeeRole
from employees.utils import find_legacy_identity, max_tenant_employee_number, upsert_local_employee


class LocalEmployeeTests(TestCase):
    def setUp(self):
        self.company = Company.objects.create(name='Acme', slug='acme', company_code='ACM')
        self.user = User.objects.create_user(email='jane@example.com', password='x', first_name='Jane', last_name='Doe')

    def test_upsert_creates_then_updates(self):
        first = upsert_local_employee('default', company_id=self.company.id, user=self.user,
                                      employee_number=3, user_key='key-1')
        second = upsert_local_employee('default', company_id=self.company.id, user=self.user,
                                       employee_number=4, user_key='key-1')
        self.assertEqual(first.id, second.id)
        self.assertEqual(Employee.objects.get(id=first.id).employee_number, 4)

    def test_role_ids_replace_existing_roles(self):
        role_a, role_b = uuid.uuid4(), uuid.uuid4()
        employee = upsert_local_employee('default', company_id=self.company.id, user=self.user,
                                         employee_number=1, user_key='k', role_ids=[role_a])
        upsert_local_employee('default', company_id=self.company.id, user=self.user,
                              employee_number=1, user_key='k', role_ids=[role_b], assigned_by_id=9)
        roles = list(EmployeeRole.objects.filter(employee=employee))
        self.assertEqual([role.role_id for role in roles], [role_b])
        self.assertEqual(roles[0].assigned_by_id, 9)

    def test_roles_untouched_without_role_ids(self):
        role = uuid.uuid4()
        employee = upsert_local_employee('default', company_id=self.company.id, user=self.user,
                                         employee_number=1, user_key='k', role_ids=[role])
        upsert_local_employee('default', company_id=self.company.id, user=self.user,
                              employee_number=2, user_key='k')
        self.assertEqual(EmployeeRole.objects.filter(employee=employee).count(), 1)

    def test_legacy_lookup_and_max_number(self):
        self.assertIsNone(find_legacy_identity('jane@example.com'))
        self.assertEqual(max_tenant_employee_number(), 0)

        upsert_local_employee('default', company_id=self.company.id, user=self.user,
                              employee_number=21, user_key='legacy')

        self.assertEqual(find_legacy_identity('JANE@example.com'), (21, 'legacy'))
        self.assertEqual(max_tenant_employee_number(), 21)
