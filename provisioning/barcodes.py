"""Barcode layout of HR backend employee records.

barcode = COMPANY_CODE + str(external_branch_id - 1) + employee number padded to 3 digits
e.g. company ACM, HR branch 2, employee 7 -> ACM1007
"""

EMPLOYEE_NUMBER_PADDING = 3


def normalize_company_code(code):
    return str(code or '').strip().upper()


def format_branch_employee_code(external_branch_id, employee_number):
    segment = str(employee_number).zfill(EMPLOYEE_NUMBER_PADDING)
    return f"{external_branch_id - 1}{segment}"


def format_barcode(company_code, external_branch_id, employee_number):
    return f"{normalize_company_code(company_code)}{format_branch_employee_code(external_branch_id, employee_number)}"


def format_employee_display_name(external_branch_id, employee_number, first_name, last_name):
    full_name = f"{first_name or ''} {last_name or ''}".strip()
    return f"{format_branch_employee_code(external_branch_id, employee_number)} - {full_name}"


def decode_employee_number(barcode, company_code, external_branch_ids):
    """
    Highest employee number the barcode can encode for any of the given
    branches, or None when it does not belong to this company code.
    """
    code = normalize_company_code(company_code)
    value = str(barcode or '').strip().upper()
    if not code or not value.startswith(code):
        return None

    numeric_part = value[len(code):]
    if not (numeric_part.isascii() and numeric_part.isdigit()):
        return None

    best = None
    for external_branch_id in external_branch_ids:
        prefix = str(external_branch_id - 1)
        if not numeric_part.startswith(prefix):
            continue
        employee_part = numeric_part[len(prefix):]
        if not employee_part:
            continue
        number = int(employee_part)
        if best is None or number > best:
            best = number
    return best
