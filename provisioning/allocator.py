import logging
import re
import secrets
from dataclasses import dataclass

from django.conf import settings

from .barcodes import decode_employee_number, format_barcode
from .exceptions import AllocationExhaustedError
from .identity import bump_employee_number

logger = logging.getLogger(__name__)

PIN_PATTERN = re.compile(r'^\d{4}$')
SCAN_LIMIT = 10000
BARCODE_CHECK_LIMIT = 10


@dataclass
class Allocation:
    employee_number: int
    pin: str
    pin_reused: bool
    existing_record_count: int
    attempts: int = 0


def generate_pin():
    return str(secrets.randbelow(9000) + 1000)


def get_identity_snapshot(client, website_key):
    """(number of HR records carrying website_key, first 4-digit PIN among them or None)"""
    records = client.search_employees(
        [['x_website_key', '=', website_key]],
        ['id', 'pin'],
        limit=100,
    )
    existing_pin = None
    for record in records:
        pin = str(record.get('pin') or '').strip()
        if PIN_PATTERN.match(pin):
            existing_pin = pin
            break
    return len(records), existing_pin


def scan_external_max(client, assignments):
    """Highest employee number encoded in any HR barcode of the assigned company codes."""
    known_ids_by_code = {}
    for assignment in assignments:
        ids = known_ids_by_code.setdefault(assignment.company_code, set())
        ids.update(assignment.known_external_branch_ids)
        ids.update(branch.external_branch_id for branch in assignment.branches)

    highest = 0
    for company_code, external_branch_ids in known_ids_by_code.items():
        records = client.search_employees(
            [['barcode', '=ilike', f'{company_code}%']],
            ['barcode'],
            limit=SCAN_LIMIT,
        )
        for record in records:
            number = decode_employee_number(record.get('barcode'), company_code, external_branch_ids)
            if number is not None and number > highest:
                highest = number
        logger.debug("Barcode scan for %s: %s record(s), max so far %s", company_code, len(records), highest)
    return highest


def is_number_available(client, assignments, website_key, candidate):
    """False when any requested barcode is already held by another identity."""
    for assignment in assignments:
        for branch in assignment.branches:
            barcode = format_barcode(assignment.company_code, branch.external_branch_id, candidate)
            matches = client.search_employees(
                [['barcode', '=', barcode]],
                ['id', 'x_website_key'],
                limit=BARCODE_CHECK_LIMIT,
            )
            if any(match.get('x_website_key') != website_key for match in matches):
                logger.info("Barcode %s is taken by another identity", barcode)
                return False
    return True


def allocate_number(identity, assignments, *, client, deadline, progress=None) -> Allocation:
    """
    Choose the final employee number and the shared PIN for identity.

    The HR backend is the source of truth for collisions and is queried on
    every candidate check. The stored number is moved forward when the final number
    differs from it.
    """
    max_attempts = (getattr(settings, 'PROVISIONING', {}) or {}).get('ALLOCATION_MAX_ATTEMPTS', 5000)

    deadline.check('allocation')
    external_max = scan_external_max(client, assignments)
    existing_count, existing_pin = get_identity_snapshot(client, identity.website_key)

    employee_number = identity.employee_number
    if existing_count == 0 and employee_number <= external_max:
        employee_number = external_max + 1

    pin = existing_pin or generate_pin()
    if progress:
        progress('pin', (
            'Reused existing employee PIN for all assigned branches.'
            if existing_pin else
            'Generated a new PIN and will apply it to all assigned branches.'
        ))

    attempts = 0
    while True:
        deadline.check('allocation')
        if is_number_available(client, assignments, identity.website_key, employee_number):
            break
        attempts += 1
        if attempts > max_attempts:
            logger.error(
                "No free employee number for identity %s after %s attempts (last tried %s)",
                identity.identity_id, max_attempts, employee_number,
            )
            raise AllocationExhaustedError()
        employee_number += 1

    if employee_number != identity.employee_number:
        bump_employee_number(identity.identity_id, employee_number)

    logger.info(
        "Allocated employee number %s for identity %s (external max %s, %s existing HR record(s))",
        employee_number, identity.identity_id, external_max, existing_count,
    )
    return Allocation(
        employee_number=employee_number,
        pin=pin,
        pin_reused=existing_pin is not None,
        existing_record_count=existing_count,
        attempts=attempts,
    )
