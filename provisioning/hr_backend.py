import logging
import random
import time
from typing import Any, Dict, List, Optional

import requests
from django.conf import settings

logger = logging.getLogger(__name__)

EMPLOYEE_MODEL = "hr.employee"
PARTNER_MODEL = "res.partner"
PARTNER_MERGE_WIZARD_MODEL = "base.partner.merge.automatic.wizard"
# The merge wizard rejects large batches; canonical partner + 2 others per call.
PARTNER_MERGE_CHUNK_SIZE = 2
EMPLOYEE_PARTNER_CATEGORY_ID = 3


class HrBackendError(Exception):
    def __init__(self, message: str, *, status_code: Optional[int] = None, code: str = "", payload: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code or ""
        self.payload = payload


class HrBackendClient:
    """
    JSON-RPC client for the HR backend (Odoo execute_kw).

    The provisioning engine relies on three operations only:
    search_employees, upsert_employee and merge_contacts_by_email.
    """

    def __init__(
        self,
        *,
        url: str,
        database: str,
        uid: int,
        password: str,
        timeout: int = 30,
        retry_attempts: int = 3,
        retry_delay: float = 0.3,
        session=None,
    ):
        self.url = url
        self.database = database
        self.uid = uid
        self.password = password
        self.timeout = timeout
        self.retry_attempts = max(1, int(retry_attempts or 1))
        self.retry_delay = retry_delay
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls, session=None) -> "HrBackendClient":
        config = getattr(settings, "HR_BACKEND", {}) or {}
        return cls(
            url=config.get("URL", ""),
            database=config.get("DB", ""),
            uid=int(config.get("UID", 2)),
            password=config.get("PASSWORD", ""),
            timeout=int(config.get("TIMEOUT", 30)),
            retry_attempts=int(config.get("RETRY_ATTEMPTS", 3)),
            session=session,
        )

    def _endpoint(self) -> str:
        base = (self.url or "").strip().rstrip("/")
        if not base:
            raise HrBackendError("HR backend URL is not configured.")
        if not base.startswith(("http://", "https://")):
            base = f"https://{base}"
        return f"{base}/jsonrpc"

    def _rpc(self, params: Dict[str, Any], timeout: Optional[float] = None) -> Any:
        body = {
            "jsonrpc": "2.0",
            "method": "call",
            "params": params,
            "id": random.randint(1, 1_000_000),
        }
        try:
            response = self.session.post(
                self._endpoint(),
                json=body,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout if timeout is None else timeout,
            )
        except requests.RequestException as exc:
            raise HrBackendError(f"HR backend request failed: {exc}") from exc

        if response.status_code >= 400:
            raise HrBackendError(
                f"HR backend HTTP error: {response.status_code}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise HrBackendError(
                "HR backend returned a non-JSON response.",
                status_code=response.status_code,
            ) from exc

        error = payload.get("error") if isinstance(payload, dict) else None
        if error:
            data = error.get("data") or {}
            message = data.get("message") or error.get("message") or "Unknown error"
            raise HrBackendError(
                f"HR backend error: {message}",
                code=str(error.get("code") or ""),
                payload=error,
            )
        return payload.get("result") if isinstance(payload, dict) else None

    def _timeout_for(self, deadline) -> float:
        if deadline is None:
            return self.timeout
        if deadline.expired():
            raise HrBackendError("HR backend call skipped: provisioning deadline reached.")
        return min(self.timeout, deadline.remaining())

    def call_kw(
        self,
        model: str,
        method: str,
        args: Optional[list] = None,
        kwargs: Optional[dict] = None,
        *,
        deadline=None,
    ) -> Any:
        params = {
            "service": "object",
            "method": "execute_kw",
            "args": [
                self.database,
                self.uid,
                self.password,
                model,
                method,
                args or [],
                kwargs or {},
            ],
        }
        try:
            return self._rpc(params, timeout=self._timeout_for(deadline))
        except HrBackendError as exc:
            logger.error("HR backend execute_kw failed for %s.%s: %s", model, method, exc)
            raise

    def _with_retry(self, fn, deadline=None):
        """Retry fn on HrBackendError with a linear backoff; never sleeps past the deadline."""
        last_error = None
        for attempt in range(self.retry_attempts):
            try:
                return fn()
            except HrBackendError as exc:
                last_error = exc
                if attempt == self.retry_attempts - 1:
                    break
                delay = self.retry_delay * (attempt + 1)
                if deadline is not None and deadline.remaining() <= delay:
                    break
                time.sleep(delay)
        raise last_error

    # --- operations used by the provisioning engine ---

    def search_employees(
        self,
        domain: list,
        fields: List[str],
        limit: int = 100,
        *,
        deadline=None,
    ) -> List[Dict[str, Any]]:
        result = self.call_kw(
            EMPLOYEE_MODEL,
            "search_read",
            [],
            {"domain": domain, "fields": fields, "limit": limit},
            deadline=deadline,
        )
        return list(result or [])

    def upsert_employee(
        self,
        *,
        company_id: int,
        name: str,
        work_email: str,
        pin: str,
        barcode: str,
        website_key: str,
        update_existing: bool = True,
        deadline=None,
    ) -> int:
        """
        Create the branch employee for website_key, or update it in place.

        With update_existing=False an existing record is returned untouched.
        Every call is bounded by deadline when one is given.
        """
        existing = self.search_employees(
            [["x_website_key", "=", website_key], ["company_id", "=", company_id]],
            ["id"],
            limit=1,
            deadline=deadline,
        )
        if existing and not update_existing:
            return existing[0]["id"]

        payload = {
            "name": name,
            "work_email": work_email,
            "pin": pin,
            "barcode": barcode,
            "x_website_key": website_key,
            "company_id": company_id,
        }

        if existing:
            employee_id = existing[0]["id"]
            logger.info("Updating HR employee %s (company %s, barcode %s)", employee_id, company_id, barcode)
            self._with_retry(
                lambda: self.call_kw(EMPLOYEE_MODEL, "write", [[employee_id], payload], deadline=deadline),
                deadline,
            )
            return employee_id

        logger.info("Creating HR employee (company %s, barcode %s)", company_id, barcode)
        return self._with_retry(
            lambda: self.call_kw(EMPLOYEE_MODEL, "create", [payload], deadline=deadline),
            deadline,
        )

    def _merge_partner_chunk(self, partner_ids: List[int], destination_id: int) -> None:
        wizard_id = self.call_kw(
            PARTNER_MERGE_WIZARD_MODEL,
            "create",
            [{"partner_ids": [[6, 0, partner_ids]], "dst_partner_id": destination_id}],
        )
        self.call_kw(PARTNER_MERGE_WIZARD_MODEL, "action_merge", [[wizard_id]])

    def _active_partners_by_email(self, email: str, limit: int) -> List[Dict[str, Any]]:
        return list(self.call_kw(
            PARTNER_MODEL,
            "search_read",
            [],
            {
                "domain": [["email", "=", email], ["active", "=", True]],
                "fields": ["id", "company_id"],
                "order": "id asc",
                "limit": limit,
            },
        ) or [])

    def merge_contacts_by_email(
        self,
        *,
        email: str,
        main_company_id: int,
        website_key: str,
        display_name: str,
    ) -> Optional[int]:
        """
        Merge every active contact sharing this email into one canonical
        partner (preferring the one owned by main_company_id), then make it
        global. Returns the canonical partner id, or None if no contact exists.
        """
        contacts = self._active_partners_by_email(email, limit=200)
        if not contacts:
            return None

        canonical_id = contacts[0]["id"]
        for contact in contacts:
            company = contact.get("company_id")
            if isinstance(company, (list, tuple)) and company and company[0] == main_company_id:
                canonical_id = contact["id"]
                break

        other_ids = [contact["id"] for contact in contacts if contact["id"] != canonical_id]
        while other_ids:
            chunk = other_ids[:PARTNER_MERGE_CHUNK_SIZE]
            other_ids = other_ids[PARTNER_MERGE_CHUNK_SIZE:]
            self._with_retry(lambda chunk=chunk: self._merge_partner_chunk([canonical_id, *chunk], canonical_id))

        # The wizard may keep a different survivor than requested
        still_there = self.call_kw(
            PARTNER_MODEL,
            "search_read",
            [],
            {"domain": [["id", "=", canonical_id]], "fields": ["id"], "limit": 1},
        )
        if not still_there:
            refreshed = self._active_partners_by_email(email, limit=1)
            if refreshed:
                canonical_id = refreshed[0]["id"]

        self.call_kw(PARTNER_MODEL, "write", [[canonical_id], {
            "company_id": False,
            "x_website_key": website_key,
            "name": display_name,
            "category_id": [[4, EMPLOYEE_PARTNER_CATEGORY_ID]],
        }])
        logger.info("Unified HR contacts for %s under partner %s", email, canonical_id)
        return canonical_id


def get_hr_backend_client() -> HrBackendClient:
    return HrBackendClient.from_settings()
