import json
import time
import uuid
from unittest import mock

from django.core import mail
from django.db import IntegrityError
from django.test import TestCase, override_settings
from django.urls import reverse
from rest_framework import status
from rest_framework.test import APITestCase

from accounts.crypto import encrypt_value
from accounts.models import Company, RegistrationRequest, RegistrationRequestAssignment, Role, User, UserRole
from employees.models import Branch, Employee, EmployeeRole

from provisioning import progress
from provisioning.allocator import allocate_number, scan_external_max
from provisioning.assignments import resolve_company_assignments, validate_resident_branch
from provisioning.barcodes import (
    decode_employee_number, format_barcode, format_branch_employee_code, format_employee_display_name,
)
from provisioning.deadline import Deadline
from provisioning.exceptions import (
    AllocationExhaustedError, ConflictError, DeadlineExceeded, IdentityConflictError, NotFoundError,
    ValidationError,
)
from provisioning.hr_backend import HrBackendClient, HrBackendError
from provisioning.identity import ResolvedIdentity, bump_employee_number, resolve_or_create_identity
from provisioning.models import EmployeeIdentity, ProvisioningFailureLog, UserCompanyAccess, UserCompanyBranch
from provisioning.provisioner import CONTACT_MERGE_ERROR_PREFIX, PersonDetails, SuccessfulBranch, provision_branches
from provisioning.services import (
    approve_registration_request, assign_company_branches, create_registration_request,
    reject_registration_request,
)
from provisioning.snapshot import write_snapshot

PASSWORD = 'Str0ng-Passw0rd!'


def drain_progress_events():
    """Wait until every queued progress event has been handled."""
    progress._get_executor().submit(lambda: None).result(timeout=30)


class FakeHrBackend:
    """In-memory HR backend understanding the domains the engine sends."""

    def __init__(self):
        self.employees = []
        self.merges = []
        self.upserts = []
        self.fail_companies = set()
        self.merge_error = None
        self.on_upsert = None
        self._next_id = 1

    def add_employee(self, *, barcode, website_key, company_id, pin=''):
        record = {
            'id': self._next_id,
            'barcode': barcode,
            'x_website_key': website_key,
            'company_id': company_id,
            'pin': pin,
            'name': '',
            'work_email': '',
        }
        self._next_id += 1
        self.employees.append(record)
        return record

    @staticmethod
    def _matches(record, domain):
        for field_name, operator, value in domain:
            actual = record.get(field_name)
            if operator == '=':
                if actual != value:
                    return False
            elif operator == '=ilike':
                if not str(actual or '').upper().startswith(value.rstrip('%').upper()):
                    return False
            else:
                raise AssertionError(f'unexpected operator {operator}')
        return True

    def search_employees(self, domain, fields, limit=100, *, deadline=None):
        rows = [record for record in self.employees if self._matches(record, domain)][:limit]
        return [{key: row.get(key) for key in ['id', *fields]} for row in rows]

    def upsert_employee(self, *, company_id, name, work_email, pin, barcode, website_key,
                        update_existing=True, deadline=None):
        if self.on_upsert:
            self.on_upsert(company_id)
        if company_id in self.fail_companies:
            raise HrBackendError(f'HR backend error: access denied for company {company_id}')
        record = next(
            (item for item in self.employees if item['x_website_key'] == website_key and item['company_id'] == company_id),
            None,
        )
        if record is not None and not update_existing:
            return record['id']
        self.upserts.append(company_id)
        if record is None:
            record = self.add_employee(barcode=barcode, website_key=website_key, company_id=company_id)
        record.update({'name': name, 'work_email': work_email, 'pin': pin, 'barcode': barcode})
        return record['id']

    def merge_contacts_by_email(self, *, email, main_company_id, website_key, display_name):
        if self.merge_error:
            raise self.merge_error
        self.merges.append({
            'email': email,
            'main_company_id': main_company_id,
            'website_key': website_key,
            'display_name': display_name,
        })
        return 99

    def barcodes_for(self, website_key):
        return sorted(item['barcode'] for item in self.employees if item['x_website_key'] == website_key)


class ProvisioningFixtureMixin:
    def create_company(self, name='Acme', code='ACM', slug=None):
        return Company.objects.create(name=name, slug=slug or name.lower(), company_code=code)

    def create_branch(self, company, name, hr_branch_id, is_active=True):
        return Branch.objects.create(company_id=company.id, name=name, hr_branch_id=hr_branch_id, is_active=is_active)

    def create_registration(self, email='jane@example.com', first_name='Jane', last_name='Doe'):
        return RegistrationRequest.objects.create(
            first_name=first_name,
            last_name=last_name,
            email=email,
            encrypted_password=encrypt_value(PASSWORD),
        )

    def setUpEngine(self):
        self.hr = FakeHrBackend()
        self.reviewer = User.objects.create_user(email='admin@example.com', password='pass', is_admin=True)
        self.role = Role.objects.create(name='Service Crew', priority=10)
        self.company = self.create_company()
        self.b1 = self.create_branch(self.company, 'Main Street', 1)
        self.b2 = self.create_branch(self.company, 'Harbor', 2)

    def assignments_for(self, *branches, company=None):
        company = company or self.company
        return [{'company_id': company.id, 'branch_ids': [branch.id for branch in branches]}]

    def approve(self, registration, *branches, resident=None, deadline=None):
        resident = resident or branches[0]
        return approve_registration_request(
            reviewer=self.reviewer,
            request_id=registration.id,
            role_ids=[self.role.id],
            company_assignments=self.assignments_for(*branches),
            resident_branch={'company_id': self.company.id, 'branch_id': resident.id},
            client=self.hr,
            deadline=deadline or Deadline(60),
        )


class BarcodeTests(TestCase):
    def test_branch_code_uses_external_id_minus_one(self):
        self.assertEqual(format_branch_employee_code(1, 1), '0001')
        self.assertEqual(format_branch_employee_code(2, 7), '1007')
        self.assertEqual(format_branch_employee_code(11, 1234), '101234')

    def test_barcode_and_display_name(self):
        self.assertEqual(format_barcode('acm ', 2, 1), 'ACM1001')
        self.assertEqual(format_employee_display_name(2, 1, 'Jane', 'Doe'), '1001 - Jane Doe')

    def test_decode_keeps_highest_candidate(self):
        # "11005" reads as branch 2 / number 1005 or branch 12 / number 5
        self.assertEqual(decode_employee_number('ACM11005', 'ACM', [2, 12]), 1005)
        self.assertEqual(decode_employee_number('ACM11005', 'ACM', [12]), 5)
        self.assertEqual(decode_employee_number('acm0005', 'ACM', [1]), 5)

    def test_decode_rejects_foreign_or_malformed_barcodes(self):
        self.assertIsNone(decode_employee_number('XYZ0001', 'ACM', [1]))
        self.assertIsNone(decode_employee_number('ACM00A1', 'ACM', [1]))
        self.assertIsNone(decode_employee_number('ACM0', 'ACM', [1]))
        self.assertIsNone(decode_employee_number('ACM5001', 'ACM', [1, 2]))


class IdentityStoreTests(ProvisioningFixtureMixin, TestCase):
    def test_new_identity_gets_next_number_across_sources(self):
        EmployeeIdentity.objects.create(email='old@example.com', employee_number=4, website_key='k-old')
        User.objects.create_user(email='u@example.com', password='x', employee_number=9)
        company = self.create_company()
        Employee.objects.create(company_id=company.id, user_id=123, email='t@example.com',
                                first_name='T', last_name='T', employee_number=11)

        identity = resolve_or_create_identity('  New@Example.com ')

        self.assertFalse(identity.was_existing)
        self.assertEqual(identity.email, 'new@example.com')
        self.assertEqual(identity.employee_number, 12)
        self.assertTrue(identity.website_key)

    def test_existing_identity_is_returned_unchanged(self):
        first = resolve_or_create_identity('jane@example.com')
        second = resolve_or_create_identity('JANE@example.com')
        self.assertTrue(second.was_existing)
        self.assertEqual(first.identity_id, second.identity_id)
        self.assertEqual(first.website_key, second.website_key)
        self.assertEqual(EmployeeIdentity.objects.count(), 1)

    def test_adopts_legacy_pair_from_tenant_records(self):
        company = self.create_company()
        Employee.objects.create(company_id=company.id, user_id=5, email='Legacy@example.com',
                                first_name='L', last_name='G', employee_number=42, user_key='legacy-key')

        identity = resolve_or_create_identity('legacy@example.com')

        self.assertTrue(identity.was_existing)
        self.assertEqual(identity.employee_number, 42)
        self.assertEqual(identity.website_key, 'legacy-key')

    def test_adopts_legacy_pair_from_master_user(self):
        User.objects.create_user(email='kept@example.com', password='x', employee_number=17, user_key='user-key')
        identity = resolve_or_create_identity('kept@example.com')
        self.assertTrue(identity.was_existing)
        self.assertEqual((identity.employee_number, identity.website_key), (17, 'user-key'))

    def test_insert_race_is_retried(self):
        resolved = ResolvedIdentity(1, 'race@example.com', 3, 'key', True)
        with mock.patch('provisioning.identity._resolve_once', side_effect=[IntegrityError('dup'), resolved]) as resolve:
            self.assertEqual(resolve_or_create_identity('race@example.com'), resolved)
        self.assertEqual(resolve.call_count, 2)

    def test_insert_race_gives_up_after_retries(self):
        with mock.patch('provisioning.identity._resolve_once', side_effect=IntegrityError('dup')):
            with self.assertRaises(IdentityConflictError):
                resolve_or_create_identity('race@example.com')

    def test_employee_number_only_moves_forward(self):
        identity = EmployeeIdentity.objects.create(email='m@example.com', employee_number=5, website_key='k')
        self.assertFalse(bump_employee_number(identity.id, 3))
        self.assertTrue(bump_employee_number(identity.id, 8))
        identity.refresh_from_db()
        self.assertEqual(identity.employee_number, 8)


class AssignmentValidationTests(ProvisioningFixtureMixin, TestCase):
    def setUp(self):
        self.company = self.create_company()
        self.b1 = self.create_branch(self.company, 'Main Street', 1)
        self.b2 = self.create_branch(self.company, 'Harbor', 2)

    def test_resolves_in_request_order_and_dedupes_branches(self):
        assignments = resolve_company_assignments([
            {'company_id': self.company.id, 'branch_ids': [self.b2.id, str(self.b1.id), self.b2.id]},
        ])
        self.assertEqual(len(assignments), 1)
        self.assertEqual(assignments[0].company_code, 'ACM')
        self.assertEqual([branch.branch_id for branch in assignments[0].branches], [self.b2.id, self.b1.id])
        self.assertEqual(assignments[0].known_external_branch_ids, [1, 2])

    def test_rejects_invalid_input(self):
        no_code = self.create_company(name='Nocode', code=None)
        inactive = self.create_branch(self.company, 'Closed', 3, is_active=False)
        missing_ext = self.create_branch(self.company, 'Unlinked', None)

        cases = [
            [],
            [{'company_id': self.company.id, 'branch_ids': []}],
            [{'company_id': self.company.id, 'branch_ids': [self.b1.id]},
             {'company_id': self.company.id, 'branch_ids': [self.b2.id]}],
            [{'company_id': 9999, 'branch_ids': [self.b1.id]}],
            [{'company_id': no_code.id, 'branch_ids': [self.b1.id]}],
            [{'company_id': self.company.id, 'branch_ids': [inactive.id]}],
            [{'company_id': self.company.id, 'branch_ids': [missing_ext.id]}],
            [{'company_id': self.company.id, 'branch_ids': ['not-a-uuid']}],
        ]
        for case in cases:
            with self.subTest(case=case):
                with self.assertRaises(ValidationError):
                    resolve_company_assignments(case)

    def test_resident_must_be_a_requested_branch(self):
        assignments = resolve_company_assignments(self.assignments_for(self.b1))
        resident = validate_resident_branch(assignments, {'company_id': self.company.id, 'branch_id': self.b1.id})
        self.assertEqual(resident.branch_name, 'Main Street')
        with self.assertRaises(ValidationError):
            validate_resident_branch(assignments, {'company_id': self.company.id, 'branch_id': self.b2.id})


class AllocatorTests(ProvisioningFixtureMixin, TestCase):
    def setUp(self):
        self.hr = FakeHrBackend()
        self.company = self.create_company()
        self.b1 = self.create_branch(self.company, 'Main Street', 1)
        self.b2 = self.create_branch(self.company, 'Harbor', 2)
        self.assignments = resolve_company_assignments(self.assignments_for(self.b1, self.b2))

    def test_external_max_scans_every_branch_of_the_company(self):
        unrequested = self.create_branch(self.company, 'Airport', 5)
        self.hr.add_employee(barcode='ACM4017', website_key='other', company_id=unrequested.hr_branch_id)
        self.hr.add_employee(barcode='ACM0003', website_key='other', company_id=1)
        self.hr.add_employee(barcode='XYZ0099', website_key='other', company_id=1)
        assignments = resolve_company_assignments(self.assignments_for(self.b1))
        self.assertEqual(scan_external_max(self.hr, assignments), 17)

    def test_new_identity_jumps_past_external_max_and_generates_pin(self):
        self.hr.add_employee(barcode='ACM1004', website_key='other', company_id=2)
        identity = resolve_or_create_identity('new@example.com')

        allocation = allocate_number(identity, self.assignments, client=self.hr, deadline=Deadline(60))

        self.assertEqual(allocation.employee_number, 5)
        self.assertRegex(allocation.pin, r'^\d{4}$')
        self.assertFalse(allocation.pin_reused)
        self.assertEqual(EmployeeIdentity.objects.get(id=identity.identity_id).employee_number, 5)

    def test_collision_check_skips_barcodes_held_by_others(self):
        identity = resolve_or_create_identity('known@example.com')
        # Already provisioned elsewhere, so the external max does not apply
        self.hr.add_employee(barcode='ACM1001', website_key=identity.website_key, company_id=2, pin='4321')
        self.hr.add_employee(barcode='ACM0001', website_key='someone-else', company_id=1)

        allocation = allocate_number(identity, self.assignments, client=self.hr, deadline=Deadline(60))

        self.assertEqual(allocation.employee_number, 2)
        self.assertEqual(allocation.attempts, 1)
        self.assertEqual(allocation.pin, '4321')
        self.assertTrue(allocation.pin_reused)
        self.assertEqual(allocation.existing_record_count, 1)

    def test_own_records_do_not_count_as_collisions(self):
        identity = resolve_or_create_identity('known@example.com')
        self.hr.add_employee(barcode='ACM0001', website_key=identity.website_key, company_id=1)
        allocation = allocate_number(identity, self.assignments, client=self.hr, deadline=Deadline(60))
        self.assertEqual(allocation.employee_number, 1)
        self.assertEqual(allocation.attempts, 0)

    @override_settings(PROVISIONING={'ALLOCATION_MAX_ATTEMPTS': 2, 'DEADLINE_SECONDS': 60})
    def test_exhaustion_raises_before_any_write(self):
        identity = resolve_or_create_identity('busy@example.com')
        self.hr.add_employee(barcode='ACM1050', website_key=identity.website_key, company_id=2)
        for number in range(1, 5):
            self.hr.add_employee(barcode=format_barcode('ACM', 1, number), website_key='other', company_id=1)

        with self.assertRaises(AllocationExhaustedError):
            allocate_number(identity, self.assignments, client=self.hr, deadline=Deadline(60))
        self.assertEqual(EmployeeIdentity.objects.get(id=identity.identity_id).employee_number, 1)

    def test_expired_deadline_stops_allocation(self):
        identity = resolve_or_create_identity('late@example.com')
        with self.assertRaises(DeadlineExceeded):
            allocate_number(identity, self.assignments, client=self.hr, deadline=Deadline(0))


class SnapshotTests(ProvisioningFixtureMixin, TestCase):
    def setUp(self):
        self.user = User.objects.create_user(email='snap@example.com', password='x')
        self.company = self.create_company()
        self.b1 = self.create_branch(self.company, 'Main Street', 1)
        self.b2 = self.create_branch(self.company, 'Harbor', 2)
        self.assignments = resolve_company_assignments(self.assignments_for(self.b1, self.b2))
        self.resident = validate_resident_branch(self.assignments, {'company_id': self.company.id, 'branch_id': self.b2.id})
        self.successes = [SuccessfulBranch(self.company.id, self.b2.id, 'Harbor', 2)]

    def test_only_successful_branches_are_written(self):
        write_snapshot(self.user.id, self.assignments, self.successes, resident=self.resident)

        self.assertEqual(UserCompanyAccess.objects.filter(user=self.user).count(), 1)
        rows = list(UserCompanyBranch.objects.filter(user=self.user))
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].branch_id, self.b2.id)
        self.assertEqual(rows[0].assignment_type, UserCompanyBranch.ASSIGNMENT_RESIDENT)

    def test_rewrite_is_idempotent(self):
        write_snapshot(self.user.id, self.assignments, self.successes, resident=self.resident)
        write_snapshot(self.user.id, self.assignments, self.successes, resident=self.resident)
        self.assertEqual(UserCompanyAccess.objects.filter(user=self.user).count(), 1)
        self.assertEqual(UserCompanyBranch.objects.filter(user=self.user).count(), 1)

    def test_branches_outside_resident_are_borrowed(self):
        write_snapshot(self.user.id, self.assignments, self.successes)
        row = UserCompanyBranch.objects.get(user=self.user)
        self.assertEqual(row.assignment_type, UserCompanyBranch.ASSIGNMENT_BORROW)


class ApproveRegistrationTests(ProvisioningFixtureMixin, TestCase):
    def setUp(self):
        self.setUpEngine()
        self.registration = self.create_registration()

    def test_new_identity_is_provisioned_in_every_branch(self):
        result = self.approve(self.registration, self.b1, self.b2)

        self.assertEqual(result.employee_number, 1)
        self.assertFalse(result.provisioning.has_failures)
        user = User.objects.get(email='jane@example.com')
        identity = EmployeeIdentity.objects.get(email='jane@example.com')
        self.assertEqual(self.hr.barcodes_for(identity.website_key), ['ACM0001', 'ACM1001'])

        records = [item for item in self.hr.employees if item['x_website_key'] == identity.website_key]
        self.assertEqual({item['name'] for item in records}, {'0001 - Jane Doe', '1001 - Jane Doe'})
        self.assertEqual(len({item['pin'] for item in records}), 1)

        self.assertEqual(user.employee_number, 1)
        self.assertEqual(user.user_key, identity.website_key)
        self.assertTrue(user.check_password(PASSWORD))
        self.assertTrue(UserRole.objects.filter(user=user, role=self.role).exists())

        self.registration.refresh_from_db()
        self.assertEqual(self.registration.status, RegistrationRequest.STATUS_APPROVED)
        self.assertEqual(self.registration.approved_user_id, user.id)
        self.assertEqual(self.registration.resident_branch_id, self.b1.id)
        self.assertEqual(self.registration.approved_role_ids, [str(self.role.id)])
        snapshot = RegistrationRequestAssignment.objects.get(registration_request=self.registration)
        self.assertEqual(len(snapshot.branches), 2)

        local = Employee.objects.get(company_id=self.company.id, user_id=user.id)
        self.assertEqual(local.employee_number, 1)
        self.assertTrue(EmployeeRole.objects.filter(employee=local, role_id=self.role.id).exists())

        branch_rows = {row.branch_id: row.assignment_type for row in UserCompanyBranch.objects.filter(user=user)}
        self.assertEqual(branch_rows, {
            self.b1.id: UserCompanyBranch.ASSIGNMENT_RESIDENT,
            self.b2.id: UserCompanyBranch.ASSIGNMENT_BORROW,
        })
        self.assertEqual(self.hr.merges[0]['main_company_id'], 1)
        self.assertEqual(len(mail.outbox), 1)
        self.assertIn(PASSWORD, mail.outbox[0].body)

    def test_number_collision_moves_to_next_free_number(self):
        self.hr.add_employee(barcode='ACM0001', website_key='someone-else', company_id=1)

        result = self.approve(self.registration, self.b1, self.b2)

        self.assertEqual(result.employee_number, 2)
        identity = EmployeeIdentity.objects.get(email='jane@example.com')
        self.assertEqual(identity.employee_number, 2)
        self.assertEqual(self.hr.barcodes_for(identity.website_key), ['ACM0002', 'ACM1002'])
        self.assertEqual(User.objects.get(email='jane@example.com').employee_number, 2)

    def test_branch_failure_is_isolated(self):
        self.hr.fail_companies = {2}

        result = self.approve(self.registration, self.b1, self.b2)

        self.assertEqual([item.branch_id for item in result.provisioning.successful_branches], [self.b1.id])
        self.assertEqual(len(result.provisioning.failures), 1)
        failure = result.provisioning.failures[0]
        self.assertEqual(failure.branch_id, self.b2.id)
        self.assertIn('access denied', failure.error)

        user = User.objects.get(email='jane@example.com')
        self.assertEqual(list(UserCompanyBranch.objects.filter(user=user).values_list('branch_id', flat=True)), [self.b1.id])
        self.assertTrue(UserCompanyAccess.objects.filter(user=user, company=self.company).exists())
        log = ProvisioningFailureLog.objects.get(user=user)
        self.assertEqual(log.context, ProvisioningFailureLog.CONTEXT_REGISTRATION)
        self.assertEqual(log.registration_request_id, self.registration.id)
        self.registration.refresh_from_db()
        self.assertEqual(self.registration.status, RegistrationRequest.STATUS_APPROVED)

    def test_middle_branch_failure_does_not_stop_later_branches(self):
        b3 = self.create_branch(self.company, 'Airport', 3)
        self.hr.fail_companies = {2}

        result = self.approve(self.registration, self.b1, self.b2, b3)

        self.assertEqual(
            [item.branch_id for item in result.provisioning.successful_branches], [self.b1.id, b3.id],
        )
        self.assertEqual([item.branch_id for item in result.provisioning.failures], [self.b2.id])
        identity = EmployeeIdentity.objects.get(email='jane@example.com')
        self.assertEqual(self.hr.barcodes_for(identity.website_key), ['ACM0001', 'ACM2001'])
        self.assertEqual(
            set(UserCompanyBranch.objects.filter(user_id=result.user_id).values_list('branch_id', flat=True)),
            {self.b1.id, b3.id},
        )

    @override_settings(REDIS_URL='redis://localhost:6379/0')
    def test_stalled_progress_channel_does_not_delay_approval(self):
        stalled = mock.MagicMock()
        stalled.publish.side_effect = lambda channel, message: time.sleep(0.3) or 1

        with mock.patch('provisioning.progress.get_redis_client', return_value=stalled):
            result = approve_registration_request(
                reviewer=self.reviewer,
                request_id=self.registration.id,
                role_ids=[self.role.id],
                company_assignments=self.assignments_for(self.b1, self.b2),
                resident_branch={'company_id': self.company.id, 'branch_id': self.b1.id},
                reviewer_company_id=self.company.id,
                client=self.hr,
                deadline=Deadline(2),
            )
            drain_progress_events()

        self.assertEqual(len(result.provisioning.successful_branches), 2)
        self.registration.refresh_from_db()
        self.assertEqual(self.registration.status, RegistrationRequest.STATUS_APPROVED)
        self.assertGreater(stalled.publish.call_count, 5)

    def test_contact_merge_failure_does_not_block_approval(self):
        self.hr.merge_error = HrBackendError('HR backend error: merge not allowed')

        result = self.approve(self.registration, self.b1, self.b2)

        self.assertEqual(len(result.provisioning.successful_branches), 2)
        self.assertEqual(len(result.provisioning.failures), 1)
        failure = result.provisioning.failures[0]
        self.assertTrue(failure.error.startswith(CONTACT_MERGE_ERROR_PREFIX))
        self.assertEqual(failure.branch_id, self.b1.id)
        self.assertEqual(UserCompanyBranch.objects.filter(user_id=result.user_id).count(), 2)

    def test_second_approval_conflicts_without_writes(self):
        self.approve(self.registration, self.b1, self.b2)
        upserts_before = len(self.hr.upserts)
        users_before = User.objects.count()

        with self.assertRaises(ConflictError):
            self.approve(self.registration, self.b1, self.b2)

        self.assertEqual(len(self.hr.upserts), upserts_before)
        self.assertEqual(User.objects.count(), users_before)
        self.assertEqual(len(mail.outbox), 1)

    def test_concurrent_resolution_rolls_back_local_writes(self):
        def resolved_elsewhere(company_id):
            RegistrationRequest.objects.filter(id=self.registration.id).update(status=RegistrationRequest.STATUS_REJECTED)

        self.hr.on_upsert = resolved_elsewhere

        with self.assertRaises(ConflictError):
            self.approve(self.registration, self.b1, self.b2)

        self.assertFalse(User.objects.filter(email='jane@example.com').exists())
        self.assertFalse(UserCompanyAccess.objects.exists())
        self.assertFalse(UserCompanyBranch.objects.exists())
        self.assertFalse(RegistrationRequestAssignment.objects.exists())
        self.assertFalse(Employee.objects.filter(email='jane@example.com').exists())
        self.registration.refresh_from_db()
        self.assertEqual(self.registration.status, RegistrationRequest.STATUS_REJECTED)
        self.assertEqual(len(mail.outbox), 0)

    def test_expired_deadline_leaves_request_pending(self):
        with self.assertRaises(DeadlineExceeded):
            self.approve(self.registration, self.b1, deadline=Deadline(0))

        self.registration.refresh_from_db()
        self.assertEqual(self.registration.status, RegistrationRequest.STATUS_PENDING)
        self.assertFalse(User.objects.filter(email='jane@example.com').exists())
        self.assertEqual(self.hr.upserts, [])

    def test_validation_happens_before_hr_calls(self):
        with self.assertRaises(ValidationError):
            approve_registration_request(
                reviewer=self.reviewer,
                request_id=self.registration.id,
                role_ids=[self.role.id],
                company_assignments=self.assignments_for(self.b1),
                resident_branch={'company_id': self.company.id, 'branch_id': self.b2.id},
                client=self.hr,
            )
        with self.assertRaises(ValidationError):
            approve_registration_request(
                reviewer=self.reviewer,
                request_id=self.registration.id,
                role_ids=['6f1c2e3a-0000-4000-8000-000000000000'],
                company_assignments=self.assignments_for(self.b1),
                resident_branch={'company_id': self.company.id, 'branch_id': self.b1.id},
                client=self.hr,
            )
        self.assertEqual(self.hr.employees, [])
        self.assertFalse(EmployeeIdentity.objects.exists())

    def test_unknown_request(self):
        with self.assertRaises(NotFoundError):
            approve_registration_request(
                reviewer=self.reviewer,
                request_id=uuid.uuid4(),
                role_ids=[self.role.id],
                company_assignments=self.assignments_for(self.b1),
                resident_branch={'company_id': self.company.id, 'branch_id': self.b1.id},
                client=self.hr,
            )


class AssignCompanyBranchesTests(ProvisioningFixtureMixin, TestCase):
    def setUp(self):
        self.setUpEngine()
        self.result = self.approve(self.create_registration(), self.b1, self.b2, resident=self.b1)
        self.user = User.objects.get(id=self.result.user_id)

    def test_resident_is_kept_when_still_assigned(self):
        result = assign_company_branches(
            user_id=self.user.id,
            company_assignments=self.assignments_for(self.b1),
            client=self.hr,
        )
        self.assertEqual(result.employee_number, self.result.employee_number)
        row = UserCompanyBranch.objects.get(user=self.user)
        self.assertEqual(row.branch_id, self.b1.id)
        self.assertEqual(row.assignment_type, UserCompanyBranch.ASSIGNMENT_RESIDENT)

    def test_existing_records_are_reused(self):
        upserts_before = len(self.hr.upserts)
        assign_company_branches(
            user_id=self.user.id,
            company_assignments=self.assignments_for(self.b2),
            resident_branch={'company_id': self.company.id, 'branch_id': self.b2.id},
            client=self.hr,
        )
        self.assertEqual(len(self.hr.upserts), upserts_before)
        row = UserCompanyBranch.objects.get(user=self.user)
        self.assertEqual((row.branch_id, row.assignment_type), (self.b2.id, UserCompanyBranch.ASSIGNMENT_RESIDENT))

    def test_new_company_gets_records_and_failures_are_logged(self):
        other = self.create_company(name='Beta', code='BET')
        b3 = self.create_branch(other, 'Beta Central', 7)
        b4 = self.create_branch(other, 'Beta North', 8)
        self.hr.fail_companies = {8}

        result = assign_company_branches(
            user_id=self.user.id,
            company_assignments=[
                {'company_id': self.company.id, 'branch_ids': [self.b1.id]},
                {'company_id': other.id, 'branch_ids': [b3.id, b4.id]},
            ],
            client=self.hr,
        )

        self.assertIn('BET6001', self.hr.barcodes_for(self.user.user_key))
        self.assertEqual(len(result.provisioning.failures), 1)
        self.assertEqual(UserCompanyAccess.objects.filter(user=self.user).count(), 2)
        self.assertEqual(UserCompanyBranch.objects.filter(user=self.user).count(), 2)
        self.assertTrue(Employee.objects.filter(company_id=other.id, user_id=self.user.id).exists())
        self.assertTrue(ProvisioningFailureLog.objects.filter(
            user=self.user, context=ProvisioningFailureLog.CONTEXT_ASSIGNMENT).exists())

    def test_inactive_user_is_rejected(self):
        self.user.is_active = False
        self.user.save()
        with self.assertRaises(ValidationError):
            assign_company_branches(user_id=self.user.id, company_assignments=self.assignments_for(self.b1), client=self.hr)

    def test_unknown_user(self):
        with self.assertRaises(NotFoundError):
            assign_company_branches(user_id=999999, company_assignments=self.assignments_for(self.b1), client=self.hr)


class RegistrationRequestServiceTests(ProvisioningFixtureMixin, TestCase):
    def test_create_stores_encrypted_password(self):
        registration = create_registration_request(
            first_name=' Jane ', last_name='Doe', email='Jane@Example.com', password=PASSWORD,
        )
        self.assertEqual(registration.email, 'jane@example.com')
        self.assertEqual(registration.first_name, 'Jane')
        self.assertNotEqual(registration.encrypted_password, PASSWORD)

    def test_create_conflicts(self):
        User.objects.create_user(email='taken@example.com', password='x')
        with self.assertRaises(ConflictError):
            create_registration_request(first_name='A', last_name='B', email='taken@example.com', password=PASSWORD)

        create_registration_request(first_name='A', last_name='B', email='pending@example.com', password=PASSWORD)
        with self.assertRaises(ConflictError):
            create_registration_request(first_name='A', last_name='B', email='PENDING@example.com', password=PASSWORD)

    def test_reject_only_pending(self):
        reviewer = User.objects.create_user(email='admin@example.com', password='x', is_admin=True)
        registration = self.create_registration()

        reject_registration_request(reviewer=reviewer, request_id=registration.id, reason='Duplicate person')
        registration.refresh_from_db()
        self.assertEqual(registration.status, RegistrationRequest.STATUS_REJECTED)
        self.assertEqual(registration.rejection_reason, 'Duplicate person')

        with self.assertRaises(NotFoundError):
            reject_registration_request(reviewer=reviewer, request_id=registration.id, reason='Again')


class HrBackendClientTests(TestCase):
    class FakeResponse:
        def __init__(self, payload, status_code=200):
            self.payload = payload
            self.status_code = status_code

        def json(self):
            return self.payload

    class FakeSession:
        def __init__(self, responses):
            self.responses = list(responses)
            self.calls = []

        def post(self, url, json=None, headers=None, timeout=None):
            self.calls.append({'url': url, 'body': json, 'timeout': timeout})
            return self.responses.pop(0)

    def make_client(self, *results):
        responses = [
            item if isinstance(item, self.FakeResponse) else self.FakeResponse({'jsonrpc': '2.0', 'result': item})
            for item in results
        ]
        session = self.FakeSession(responses)
        client = HrBackendClient(
            url='hr.example.com/', database='hr', uid=2, password='secret',
            timeout=5, retry_delay=0, session=session,
        )
        return client, session

    @staticmethod
    def kw_call(call):
        _, _, _, model, method, args, kwargs = call['body']['params']['args']
        return model, method, args, kwargs

    def test_execute_kw_envelope(self):
        client, session = self.make_client([{'id': 1, 'barcode': 'ACM0001'}])

        rows = client.search_employees([['barcode', '=', 'ACM0001']], ['barcode'], limit=10)

        self.assertEqual(rows, [{'id': 1, 'barcode': 'ACM0001'}])
        call = session.calls[0]
        self.assertEqual(call['url'], 'https://hr.example.com/jsonrpc')
        self.assertEqual(call['timeout'], 5)
        self.assertEqual(call['body']['params']['service'], 'object')
        self.assertEqual(call['body']['params']['args'][:3], ['hr', 2, 'secret'])
        self.assertEqual(self.kw_call(call), (
            'hr.employee', 'search_read', [],
            {'domain': [['barcode', '=', 'ACM0001']], 'fields': ['barcode'], 'limit': 10},
        ))

    def test_error_payload_raises(self):
        error = self.FakeResponse({'error': {'code': 200, 'message': 'Odoo Server Error',
                                             'data': {'message': 'Access Denied'}}})
        client, _ = self.make_client(error)
        with self.assertRaises(HrBackendError) as ctx:
            client.search_employees([], ['id'])
        self.assertIn('Access Denied', str(ctx.exception))

    def test_http_error_raises(self):
        client, _ = self.make_client(self.FakeResponse({}, status_code=502))
        with self.assertRaises(HrBackendError) as ctx:
            client.search_employees([], ['id'])
        self.assertEqual(ctx.exception.status_code, 502)

    def test_upsert_creates_with_retry(self):
        failure = self.FakeResponse({'error': {'message': 'could not serialize access'}})
        client, session = self.make_client([], failure, 41)

        employee_id = client.upsert_employee(
            company_id=2, name='1001 - Jane Doe', work_email='jane@example.com',
            pin='1234', barcode='ACM1001', website_key='key-1',
        )

        self.assertEqual(employee_id, 41)
        self.assertEqual(len(session.calls), 3)
        model, method, args, _ = self.kw_call(session.calls[2])
        self.assertEqual((model, method), ('hr.employee', 'create'))
        self.assertEqual(args[0]['barcode'], 'ACM1001')
        self.assertEqual(args[0]['x_website_key'], 'key-1')

    def test_upsert_updates_existing_record(self):
        client, session = self.make_client([{'id': 7}], True)
        employee_id = client.upsert_employee(
            company_id=1, name='0001 - Jane Doe', work_email='jane@example.com',
            pin='1234', barcode='ACM0001', website_key='key-1',
        )
        self.assertEqual(employee_id, 7)
        _, method, args, _ = self.kw_call(session.calls[1])
        self.assertEqual(method, 'write')
        self.assertEqual(args[0], [7])

    def test_deadline_caps_request_timeout(self):
        client, session = self.make_client([])
        client.search_employees([], ['id'], deadline=Deadline(2))
        self.assertLessEqual(session.calls[0]['timeout'], 2)

    def test_expired_deadline_skips_the_call(self):
        client, session = self.make_client([])
        with self.assertRaises(HrBackendError):
            client.search_employees([], ['id'], deadline=Deadline(0))
        self.assertEqual(session.calls, [])

    def test_write_retries_stop_at_the_deadline(self):
        failure = self.FakeResponse({'error': {'message': 'could not serialize access'}})
        client, session = self.make_client([], failure, 41)
        client.retry_delay = 5

        with self.assertRaises(HrBackendError):
            client.upsert_employee(
                company_id=2, name='1001 - Jane Doe', work_email='jane@example.com',
                pin='1234', barcode='ACM1001', website_key='key-1', deadline=Deadline(1),
            )
        self.assertEqual(len(session.calls), 2)

    def test_upsert_keeps_existing_record_when_not_updating(self):
        client, session = self.make_client([{'id': 7}])
        employee_id = client.upsert_employee(
            company_id=1, name='0001 - Jane Doe', work_email='jane@example.com',
            pin='1234', barcode='ACM0001', website_key='key-1', update_existing=False,
        )
        self.assertEqual(employee_id, 7)
        self.assertEqual(len(session.calls), 1)

    def test_merge_contacts_in_chunks_under_main_company_partner(self):
        contacts = [
            {'id': 10, 'company_id': [5, 'Other']},
            {'id': 11, 'company_id': [1, 'Main']},
            {'id': 12, 'company_id': False},
            {'id': 13, 'company_id': False},
        ]
        client, session = self.make_client(contacts, 501, True, 502, True, [{'id': 11}], True)

        partner_id = client.merge_contacts_by_email(
            email='jane@example.com', main_company_id=1, website_key='key-1', display_name='0001 - Jane Doe',
        )

        self.assertEqual(partner_id, 11)
        calls = [self.kw_call(call) for call in session.calls]
        self.assertEqual(calls[1][2][0]['partner_ids'], [[6, 0, [11, 10, 12]]])
        self.assertEqual(calls[3][2][0]['partner_ids'], [[6, 0, [11, 13]]])
        model, method, args, _ = calls[-1]
        self.assertEqual((model, method), ('res.partner', 'write'))
        self.assertEqual(args[0], [11])
        self.assertEqual(args[1]['company_id'], False)
        self.assertEqual(args[1]['name'], '0001 - Jane Doe')

    def test_merge_without_contacts_is_noop(self):
        client, session = self.make_client([])
        self.assertIsNone(client.merge_contacts_by_email(
            email='nobody@example.com', main_company_id=1, website_key='k', display_name='x',
        ))
        self.assertEqual(len(session.calls), 1)


class ProvisionBranchesTests(ProvisioningFixtureMixin, TestCase):
    def setUp(self):
        self.setUpEngine()
        self.assignments = resolve_company_assignments(self.assignments_for(self.b1, self.b2))
        self.identity = ResolvedIdentity(
            identity_id=1, email='jane@example.com', employee_number=4, website_key='key-1', was_existing=False,
        )
        self.person = PersonDetails(email='jane@example.com', first_name='Jane', last_name='Doe')

    @staticmethod
    def ok(result):
        return HrBackendClientTests.FakeResponse({'jsonrpc': '2.0', 'result': result})

    def make_client(self, *responses):
        session = HrBackendClientTests.FakeSession(responses)
        client = HrBackendClient(
            url='https://hr.example.com', database='hr', uid=2, password='secret',
            timeout=5, retry_delay=0, session=session,
        )
        return client, session

    def provision(self, client):
        return provision_branches(
            self.identity, 4, '1234', self.assignments, self.person, client=client, deadline=Deadline(30),
        )

    def test_failed_existence_check_is_isolated_to_its_branch(self):
        denied = HrBackendClientTests.FakeResponse(
            {'error': {'message': 'Odoo Server Error', 'data': {'message': 'Access Denied'}}},
        )
        client, session = self.make_client(denied, self.ok([]), self.ok(55))

        result = self.provision(client)

        self.assertEqual([item.branch_id for item in result.successful_branches], [self.b2.id])
        self.assertEqual([item.branch_id for item in result.failures], [self.b1.id])
        self.assertIn('Access Denied', result.failures[0].error)
        self.assertEqual(len(session.calls), 3)
        _, method, args, _ = HrBackendClientTests.kw_call(session.calls[2])
        self.assertEqual(method, 'create')
        self.assertEqual(args[0]['barcode'], 'ACM1004')

    def test_existing_records_take_one_call_per_branch(self):
        client, session = self.make_client(self.ok([{'id': 7}]), self.ok([{'id': 8}]))

        result = self.provision(client)

        self.assertEqual(len(result.successful_branches), 2)
        self.assertEqual(
            [HrBackendClientTests.kw_call(call)[1] for call in session.calls], ['search_read', 'search_read'],
        )


class ProgressEventTests(TestCase):
    def setUp(self):
        progress._pools.clear()
        self.addCleanup(progress._pools.clear)

    @override_settings(REDIS_URL='')
    def test_disabled_without_redis_url(self):
        self.assertFalse(progress.publish_event('channel', 'event', {}))
        self.assertIsNone(progress.submit_event('channel', 'event', {}))
        self.assertIsNone(progress.ProgressReporter(company_id=5, verification_id='req-1')(progress.STEP_START, 'x'))

    @override_settings(REDIS_URL='redis://localhost:6379/0')
    def test_publishes_approval_progress_in_background(self):
        client = mock.MagicMock()
        with mock.patch('provisioning.progress.get_redis_client', return_value=client):
            reporter = progress.ProgressReporter(company_id=5, verification_id='req-1', reviewer_id=3)
            future = reporter(progress.STEP_PIN, 'Generated a new PIN')
            self.assertTrue(future.result(timeout=5))

        channel, message = client.publish.call_args[0]
        self.assertEqual(channel, 'employee-verifications:company:5')
        body = json.loads(message)
        self.assertEqual(body['event'], progress.EVENT_APPROVAL_PROGRESS)
        self.assertEqual(body['data']['step'], 'pin')
        self.assertEqual(body['data']['verificationId'], 'req-1')

    @override_settings(REDIS_URL='redis://localhost:6379/0')
    def test_clients_share_one_connection_pool(self):
        first = progress.get_redis_client()
        second = progress.get_redis_client()
        self.assertIs(first.connection_pool, second.connection_pool)
        self.assertEqual(first.connection_pool.connection_kwargs['socket_timeout'], 1)

    @override_settings(REDIS_URL='redis://localhost:6379/0')
    def test_publish_failure_is_swallowed(self):
        client = mock.MagicMock()
        client.publish.side_effect = ConnectionError('down')
        with mock.patch('provisioning.progress.get_redis_client', return_value=client):
            self.assertFalse(progress.publish_event('channel', 'event', {'a': 1}))

    @override_settings(REDIS_URL='redis://localhost:6379/0')
    def test_reporter_switches_off_after_failed_publish(self):
        client = mock.MagicMock()
        client.publish.side_effect = ConnectionError('down')
        with mock.patch('provisioning.progress.get_redis_client', return_value=client):
            reporter = progress.ProgressReporter(company_id=5, verification_id='req-1')
            self.assertFalse(reporter(progress.STEP_START, 'Starting').result(timeout=5))
            drain_progress_events()

            self.assertTrue(reporter.failed)
            self.assertIsNone(reporter(progress.STEP_VALIDATE, 'Validating'))
        self.assertEqual(client.publish.call_count, 1)


@override_settings(RATELIMIT_ENABLE=False)
class RegistrationApiTests(ProvisioningFixtureMixin, APITestCase):
    def setUp(self):
        self.setUpEngine()
        self.patcher = mock.patch('provisioning.services.get_hr_backend_client', return_value=self.hr)
        self.patcher.start()
        self.addCleanup(self.patcher.stop)

    def test_public_registration(self):
        url = reverse('provisioning:registration-create')
        payload = {
            'first_name': 'Jane', 'last_name': 'Doe', 'email': 'jane@example.com',
            'password': PASSWORD, 'confirm_password': PASSWORD,
        }
        response = self.client.post(url, payload, format='json')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertTrue(response.data['success'])

        response = self.client.post(url, payload, format='json')
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertFalse(response.data['success'])

    def test_list_requires_admin(self):
        self.create_registration()
        url = reverse('provisioning:registration-list')

        staff = User.objects.create_user(email='crew@example.com', password='x')
        self.client.force_authenticate(user=staff)
        self.assertEqual(self.client.get(url).status_code, status.HTTP_403_FORBIDDEN)

        self.client.force_authenticate(user=self.reviewer)
        response = self.client.get(url)
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data['data']), 1)
        self.assertNotIn('encrypted_password', response.data['data'][0])

    def test_assignment_options(self):
        self.client.force_authenticate(user=self.reviewer)
        response = self.client.get(reverse('provisioning:assignment-options'))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['data']['roles'][0]['name'], 'Service Crew')
        company = response.data['data']['companies'][0]
        self.assertEqual([branch['name'] for branch in company['branches']], ['Harbor', 'Main Street'])

    def test_approve_and_conflict(self):
        registration = self.create_registration()
        url = reverse('provisioning:registration-approve', args=[registration.id])
        payload = {
            'role_ids': [str(self.role.id)],
            'company_assignments': [{'company_id': self.company.id, 'branch_ids': [str(self.b1.id), str(self.b2.id)]}],
            'resident_branch': {'company_id': self.company.id, 'branch_id': str(self.b1.id)},
        }
        self.client.force_authenticate(user=self.reviewer)

        response = self.client.post(url, payload, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['data']['employee_number'], 1)
        self.assertEqual(len(response.data['data']['provisioning']['successful_branches']), 2)

        response = self.client.post(url, payload, format='json')
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)

    def test_approve_with_invalid_resident(self):
        registration = self.create_registration()
        url = reverse('provisioning:registration-approve', args=[registration.id])
        payload = {
            'role_ids': [str(self.role.id)],
            'company_assignments': [{'company_id': self.company.id, 'branch_ids': [str(self.b1.id)]}],
            'resident_branch': {'company_id': self.company.id, 'branch_id': str(self.b2.id)},
        }
        self.client.force_authenticate(user=self.reviewer)
        response = self.client.post(url, payload, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        registration.refresh_from_db()
        self.assertEqual(registration.status, RegistrationRequest.STATUS_PENDING)

    def test_reject(self):
        registration = self.create_registration()
        url = reverse('provisioning:registration-reject', args=[registration.id])
        self.client.force_authenticate(user=self.reviewer)

        self.assertEqual(self.client.post(url, {'reason': 'Unknown person'}, format='json').status_code, status.HTTP_200_OK)
        self.assertEqual(self.client.post(url, {'reason': 'Again'}, format='json').status_code, status.HTTP_404_NOT_FOUND)

    def test_reassign_user_branches(self):
        user = User.objects.create_user(email='crew@example.com', password='x', first_name='Sam', last_name='Lee')
        url = reverse('provisioning:user-company-branches', args=[user.id])
        self.client.force_authenticate(user=self.reviewer)

        response = self.client.put(url, {
            'company_assignments': [{'company_id': self.company.id, 'branch_ids': [str(self.b2.id)]}],
            'resident_branch': {'company_id': self.company.id, 'branch_id': str(self.b2.id)},
        }, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        row = UserCompanyBranch.objects.get(user=user)
        self.assertEqual(row.assignment_type, UserCompanyBranch.ASSIGNMENT_RESIDENT)
        user.refresh_from_db()
        self.assertIsNotNone(user.user_key)
