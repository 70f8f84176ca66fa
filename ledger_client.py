"""
HTTP client for the hosted ledger (PostgREST-style REST + RPC endpoints).

Failures are classified for the reconciler:
  - TransientSyncError: timeouts, connection errors, 408/425/429, 5xx, or a 2xx
    reply that does not confirm the sale. The sale stays queued.
  - SaleRejected: any other 4xx. The server looked at the sale and refused it
    (missing customer, validation failure); retrying will not help.
"""
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)

TRANSIENT_STATUS = {408, 425, 429}


class SyncError(Exception):
    """Base class for ledger submission failures."""


class TransientSyncError(SyncError):
    """The ledger could not be reached or did not answer conclusively."""


class SaleRejected(SyncError):
    """The ledger refused the sale for a structural reason."""

    def __init__(self, reason: str, code: Optional[str] = None, status: Optional[int] = None):
        super().__init__(reason)
        self.reason = reason
        self.code = code
        self.status = status


@dataclass
class SubmitResult:
    server_sale_id: Optional[str]
    duplicate: bool = False


def _error_body(resp: requests.Response) -> Dict[str, Any]:
    try:
        body = resp.json()
    except ValueError:
        return {'message': (resp.text or '').strip()[:200] or f"HTTP {resp.status_code}"}
    if isinstance(body, dict):
        return body
    return {'message': str(body)[:200]}


def _error_message(resp: requests.Response) -> str:
    body = _error_body(resp)
    message = body.get('message') or body.get('error') or body.get('msg') or f"HTTP {resp.status_code}"
    details = body.get('details') or body.get('hint')
    return f"{message} ({details})" if details else str(message)


def _extract_sale_id(body: Any) -> Optional[str]:
    if isinstance(body, list):
        body = body[0] if body else None
    if isinstance(body, dict):
        for key in ('server_sale_id', 'sale_id', 'id', 'name'):
            if body.get(key) not in (None, ''):
                return str(body[key])
        return None
    if body in (None, '', False):
        return None
    return str(body)


class LedgerClient:
    """Talks to the ledger on behalf of one till session.

    Build one per process and pass it in; it keeps a requests.Session.
    """

    def __init__(self, base_url: Optional[str], api_key: Optional[str] = None,
                 access_token: Optional[str] = None, submit_rpc: str = 'submit_offline_sale',
                 timeout: float = 15.0, session: Optional[requests.Session] = None):
        self.base_url = (base_url or '').rstrip('/')
        self.api_key = api_key
        self.access_token = access_token
        self.submit_rpc = submit_rpc
        self.timeout = timeout
        self.session = session or requests.Session()

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {
            'Content-Type': 'application/json',
            'Accept': 'application/json',
        }
        if self.api_key:
            headers['apikey'] = self.api_key
        token = self.access_token or self.api_key
        if token:
            headers['Authorization'] = f"Bearer {token}"
        if extra:
            headers.update(extra)
        return headers

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        if not self.configured:
            raise TransientSyncError("Ledger URL is not configured")
        url = self.base_url + path
        try:
            resp = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.Timeout as exc:
            raise TransientSyncError(f"Ledger timed out after {self.timeout}s") from exc
        except requests.RequestException as exc:
            raise TransientSyncError(f"Ledger unreachable: {exc}") from exc
        if resp.status_code >= 500 or resp.status_code in TRANSIENT_STATUS:
            raise TransientSyncError(f"Ledger returned {resp.status_code}: {_error_message(resp)}")
        return resp

    def _json(self, resp: requests.Response) -> Any:
        if resp.status_code == 204 or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise TransientSyncError(f"Bad JSON from ledger: {resp.text[:200]}") from exc

    # ---------- SALES ----------
    def submit_sale(self, payload: Dict[str, Any], idempotency_token: str) -> SubmitResult:
        """Submit one offline sale. Retries with the same token never create a second sale."""
        body = {'sale': payload, 'idempotency_token': idempotency_token}
        resp = self._request(
            'POST',
            f"/rest/v1/rpc/{self.submit_rpc}",
            data=json.dumps(body, separators=(',', ':')),
            headers=self._headers({'Idempotency-Key': idempotency_token}),
        )
        if 400 <= resp.status_code < 500:
            err = _error_body(resp)
            code = str(err.get('code') or '') or None
            message = _error_message(resp)
            if resp.status_code == 409 and code == '23505' and 'idempotency' in message.lower():
                logger.info("Ledger already holds sale %s", idempotency_token)
                return SubmitResult(server_sale_id=None, duplicate=True)
            raise SaleRejected(message, code=code, status=resp.status_code)
        data = self._json(resp)
        sale_id = _extract_sale_id(data)
        if not sale_id:
            raise TransientSyncError(f"Ledger did not confirm sale {idempotency_token}: {data!r}"[:300])
        duplicate = bool(data.get('duplicate')) if isinstance(data, dict) else False
        return SubmitResult(server_sale_id=sale_id, duplicate=duplicate)

    # ---------- CATALOG ----------
    def _select(self, table: str, business_id: Optional[str]) -> List[Dict[str, Any]]:
        params = {'select': '*'}
        if business_id:
            params['business_id'] = f"eq.{business_id}"
        resp = self._request('GET', f"/rest/v1/{table}", params=params, headers=self._headers())
        if resp.status_code >= 400:
            raise SyncError(f"Reading {table} failed: {_error_message(resp)}")
        rows = self._json(resp)
        return rows if isinstance(rows, list) else []

    def fetch_sellable_products(self, business_id: Optional[str] = None) -> List[Dict[str, Any]]:
        body = {'p_business_id': business_id} if business_id else {}
        resp = self._request(
            'POST', "/rest/v1/rpc/get_sellable_products",
            data=json.dumps(body), headers=self._headers(),
        )
        if resp.status_code >= 400:
            raise SyncError(f"Products sync failed: {_error_message(resp)}")
        rows = self._json(resp)
        return rows if isinstance(rows, list) else []

    def fetch_customers(self, business_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return self._select('customers', business_id)

    def fetch_printers(self, business_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return self._select('printers', business_id)

    # ---------- HEALTH ----------
    def health(self) -> bool:
        """True when the ledger answers at all (any status below 500)."""
        if not self.configured:
            return False
        try:
            resp = self.session.get(
                self.base_url + "/rest/v1/", headers=self._headers(), timeout=min(self.timeout, 5.0)
            )
        except requests.RequestException as exc:
            logger.debug("Ledger health probe failed: %s", exc)
            return False
        return resp.status_code < 500
