"""
Raw JSON-RPC client for the Odoo server.

This is the transport the resilient client wraps: no retries, no breaker,
no bookkeeping. Every failure leaves here as a RemoteCallError tagged with a
FailureKind, which is what the retry logic looks at.

Usage:
    server = OdooClient(settings.ODOO_URL)
    names = await server.list_instances()

    tenant = server.bind("odoo_acme_1a2b3c4d", "admin_acme", password)
    await tenant.authenticate()
    partner_ids = await tenant.search("res.partner", [["is_company", "=", True]])
"""

import itertools
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx
import structlog

from erpgate.core.exceptions import FailureKind, RemoteCallError
from erpgate.core.retry import classify_failure, classify_message

logger = structlog.get_logger(__name__)

_request_ids = itertools.count(1)

# Upstream statuses that usually mean a restarting or overloaded server
_TRANSIENT_STATUS_CODES = {502, 503, 504}


@dataclass(frozen=True)
class OdooIdentity:
    uid: int
    database: str
    login: str


@dataclass(frozen=True)
class CreateInstanceParams:
    master_password: str
    name: str
    admin_login: str
    admin_password: str
    lang: str = "en_US"
    country_code: str = "SA"
    phone: str = ""
    demo: bool = False


def _error_kind(error: Dict[str, Any]) -> FailureKind:
    data = error.get("data") or {}
    name = str(data.get("name", ""))
    if "SessionExpired" in name:
        return FailureKind.SESSION_EXPIRED
    return classify_message(f"{error.get('message', '')} {data.get('message', '')}")


class OdooClient:
    """
    JSON-RPC client. Unbound instances only talk to the database service
    (instance lifecycle); ``bind()`` returns a client for one tenant database.
    """

    def __init__(
        self,
        base_url: str,
        database: Optional[str] = None,
        login: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.database = database
        self.login = login
        self.password = password
        self.timeout = timeout
        self.uid: Optional[int] = None
        self._http = http_client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    def bind(self, database: str, login: str, password: str) -> "OdooClient":
        """Client for one tenant database sharing this client's connection pool."""
        return OdooClient(
            self.base_url,
            database=database,
            login=login,
            password=password,
            timeout=self.timeout,
            http_client=self._http,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _call(self, service: str, method: str, *args: Any) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "method": "call",
            "params": {"service": service, "method": method, "args": list(args)},
            "id": next(_request_ids),
        }
        try:
            response = await self._http.post(f"{self.base_url}/jsonrpc", json=payload)
        except httpx.HTTPError as e:
            raise RemoteCallError(f"Odoo request error: {e}", kind=classify_failure(e)) from e

        if response.status_code >= 400:
            kind = FailureKind.NETWORK if response.status_code in _TRANSIENT_STATUS_CODES else FailureKind.OTHER
            raise RemoteCallError(
                f"Odoo request failed: {response.status_code} {response.reason_phrase}",
                kind=kind,
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise RemoteCallError(f"Invalid Odoo response: {e}") from e

        error = body.get("error")
        if error:
            data = error.get("data") or {}
            message = data.get("message") or error.get("message") or str(error)
            raise RemoteCallError(f"Odoo error: {message}", kind=_error_kind(error))

        return body.get("result")

    def _require_binding(self) -> None:
        if not (self.database and self.login and self.password is not None):
            raise RemoteCallError("Client is not bound to a database")

    # Session

    async def authenticate(self) -> OdooIdentity:
        self._require_binding()
        uid = await self._call("common", "authenticate", self.database, self.login, self.password, {})
        if not uid:
            raise RemoteCallError(f"Access denied for {self.login} on {self.database}")
        self.uid = int(uid)
        return OdooIdentity(uid=self.uid, database=self.database or "", login=self.login or "")

    async def execute_kw(
        self,
        model: str,
        method: str,
        args: Optional[List[Any]] = None,
        kwargs: Optional[Dict[str, Any]] = None,
    ) -> Any:
        self._require_binding()
        if self.uid is None:
            await self.authenticate()
        return await self._call(
            "object",
            "execute_kw",
            self.database,
            self.uid,
            self.password,
            model,
            method,
            args or [],
            kwargs or {},
        )

    # Model operations

    async def search(self, model: str, domain: List[Any], options: Optional[Dict[str, Any]] = None) -> List[int]:
        return await self.execute_kw(model, "search", [domain], options or {})

    async def search_read(
        self,
        model: str,
        domain: List[Any],
        fields: Optional[List[str]] = None,
        options: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        kwargs: Dict[str, Any] = dict(options or {})
        if fields:
            kwargs["fields"] = fields
        if context:
            kwargs["context"] = context
        return await self.execute_kw(model, "search_read", [domain], kwargs)

    async def read(
        self,
        model: str,
        ids: List[int],
        fields: Optional[List[str]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        kwargs: Dict[str, Any] = {}
        if fields:
            kwargs["fields"] = fields
        if context:
            kwargs["context"] = context
        return await self.execute_kw(model, "read", [ids], kwargs)

    async def create(self, model: str, values: Dict[str, Any], context: Optional[Dict[str, Any]] = None) -> int:
        return await self.execute_kw(model, "create", [values], {"context": context} if context else {})

    async def write(
        self,
        model: str,
        ids: List[int],
        values: Dict[str, Any],
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        return await self.execute_kw(model, "write", [ids, values], {"context": context} if context else {})

    async def unlink(self, model: str, ids: List[int], context: Optional[Dict[str, Any]] = None) -> bool:
        return await self.execute_kw(model, "unlink", [ids], {"context": context} if context else {})

    async def execute(
        self,
        model: str,
        method: str,
        args: Optional[List[Any]] = None,
        kwargs: Optional[Dict[str, Any]] = None,
    ) -> Any:
        return await self.execute_kw(model, method, args, kwargs)

    async def name_search(
        self, model: str, name: str, domain: Optional[List[Any]] = None, limit: int = 100
    ) -> List[Any]:
        return await self.execute_kw(model, "name_search", [], {"name": name, "args": domain or [], "limit": limit})

    async def fields_get(self, model: str, fields: Optional[List[str]] = None) -> Dict[str, Any]:
        return await self.execute_kw(model, "fields_get", [fields or []], {"attributes": ["string", "type", "required"]})

    # External ids (ir.model.data)

    async def search_by_external_id(self, external_id: str) -> Optional[Dict[str, Any]]:
        """Resolve ``module.name`` to ``{"model": ..., "res_id": ...}``."""
        module, _, name = external_id.partition(".")
        if not name:
            module, name = "__export__", module
        rows = await self.search_read(
            "ir.model.data",
            [["module", "=", module], ["name", "=", name]],
            ["model", "res_id"],
            {"limit": 1},
        )
        if not rows:
            return None
        return {"model": rows[0]["model"], "res_id": rows[0]["res_id"]}

    async def read_by_external_id(self, external_id: str, fields: Optional[List[str]] = None) -> Optional[Dict[str, Any]]:
        ref = await self.search_by_external_id(external_id)
        if ref is None:
            return None
        records = await self.read(ref["model"], [ref["res_id"]], fields)
        return records[0] if records else None

    async def create_with_external_id(
        self,
        model: str,
        values: Dict[str, Any],
        external_id: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> int:
        record_id = await self.create(model, values, context)
        module, _, name = external_id.partition(".")
        if not name:
            module, name = "__export__", module
        await self.create("ir.model.data", {"module": module, "name": name, "model": model, "res_id": record_id})
        return record_id

    # Instance lifecycle (database service, master password)

    async def create_instance(self, params: CreateInstanceParams) -> bool:
        logger.info("Creating Odoo instance", instance_name=params.name, admin_login=params.admin_login)
        await self._call(
            "db",
            "create_database",
            params.master_password,
            params.name,
            params.demo,
            params.lang,
            params.admin_password,
            params.admin_login,
            params.country_code,
            params.phone,
        )
        return True

    async def delete_instance(self, master_password: str, name: str) -> bool:
        logger.info("Dropping Odoo instance", instance_name=name)
        await self._call("db", "drop", master_password, name)
        return True

    async def list_instances(self) -> List[str]:
        return list(await self._call("db", "list"))

    async def instance_exists(self, name: str) -> bool:
        return name in await self.list_instances()


__all__ = ["OdooClient", "OdooIdentity", "CreateInstanceParams"]
