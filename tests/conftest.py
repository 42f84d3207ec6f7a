"""
Test fixtures for erpgate tests.

Provides database fixtures, a manual clock and an in-memory stand-in for the
ERP server that speaks the same interface as OdooClient.
"""

import itertools
from collections import defaultdict, deque
from typing import Any, Deque, Dict, Generator, List, Optional, Tuple

import pytest
from cryptography.fernet import Fernet
from sqlmodel import Session, SQLModel, create_engine
from sqlalchemy.pool import StaticPool

import erpgate.models  # noqa: F401  (registers tables)
from erpgate.core.clock import Clock
from erpgate.core.config import settings
from erpgate.core.exceptions import FailureKind, RemoteCallError
from erpgate.core.security import encrypt_secret
from erpgate.models.organization import Organization
from erpgate.models.provisioning import ProvisioningRecord, ProvisioningStatus
from erpgate.services.audit_log import AuditLogService
from erpgate.services.client_manager import ClientManager
from erpgate.services.idempotency import IdempotencyStore
from erpgate.services.modules import ESSENTIAL_MODULES, EXTENDED_MODULES
from erpgate.services.odoo_client import CreateInstanceParams, OdooIdentity

# Use in-memory SQLite for unit tests (fast, isolated)
TEST_DATABASE_URL = "sqlite:///:memory:"

ACME_ORG_ID = "1a2b3c4d-5e6f-4a1b-8c9d-0e1f2a3b4c5d"


@pytest.fixture(autouse=True)
def encryption_key(monkeypatch):
    """Every test gets a fresh Fernet key."""
    key = Fernet.generate_key().decode("utf-8")
    monkeypatch.setattr(settings, "ENCRYPTION_KEY", key)
    monkeypatch.setattr(settings, "ODOO_MASTER_PASSWORD", "master-secret")
    monkeypatch.setattr(settings, "ODOO_URL", "http://erp.test:8069")
    return key


@pytest.fixture(scope="function")
def test_engine():
    """Create a test database engine with in-memory SQLite."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def test_session(test_engine) -> Generator[Session, None, None]:
    """Provide a test database session."""
    with Session(test_engine) as session:
        yield session


@pytest.fixture
def audit_log(test_engine) -> AuditLogService:
    return AuditLogService(test_engine)


@pytest.fixture
def idempotency_store(test_engine) -> IdempotencyStore:
    return IdempotencyStore(test_engine)


@pytest.fixture
def acme(test_session: Session) -> Organization:
    org = Organization(id=ACME_ORG_ID, name="Acme Trading LLC", slug="acme")
    test_session.add(org)
    test_session.commit()
    test_session.refresh(org)
    return org


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock(Clock):
    """Manual time. ``sleep`` returns immediately and advances the clock."""

    def __init__(self, start: float = 1000.0):
        self.current = start
        self.sleeps: List[float] = []

    def now(self) -> float:
        return self.current

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.current += seconds

    def advance(self, seconds: float) -> None:
        self.current += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# ERP server
# ---------------------------------------------------------------------------


def _matches(record: Dict[str, Any], leaf: List[Any]) -> bool:
    field, op, value = leaf
    actual = record.get(field)
    if op == "=":
        return actual == value
    if op == "!=":
        return actual != value
    if op == "in":
        return actual in value
    raise ValueError(f"Unsupported operator {op}")


def _filter(records: Dict[int, Dict[str, Any]], domain: List[Any]) -> List[int]:
    # Only flat domains: all leaves ANDed, or all ORed when any "|" is present
    leaves = [d for d in domain if d != "|"]
    any_of = "|" in domain
    ids = []
    for record_id, record in sorted(records.items()):
        checks = [_matches(record, leaf) for leaf in leaves]
        if not leaves or (any(checks) if any_of else all(checks)):
            ids.append(record_id)
    return ids


class FakeInstance:
    def __init__(self, params: CreateInstanceParams):
        self.params = params
        self.records: Dict[str, Dict[int, Dict[str, Any]]] = defaultdict(dict)
        self.records["res.company"][1] = {"id": 1, "name": "My Company"}
        self.records["res.partner"][1] = {"id": 1, "name": "My Company"}
        module_names = ["base", "web"] + ESSENTIAL_MODULES + EXTENDED_MODULES
        for module_id, name in enumerate(module_names, start=1):
            state = "installed" if name in ("base", "web") else "uninstalled"
            self.records["ir.module.module"][module_id] = {
                "id": module_id,
                "name": name,
                "display_name": name.replace("_", " ").title(),
                "summary": "",
                "state": state,
            }
        self._ids = itertools.count(1000)

    def next_id(self) -> int:
        return next(self._ids)

    def module_state(self, name: str) -> Optional[str]:
        for record in self.records["ir.module.module"].values():
            if record["name"] == name:
                return record["state"]
        return None


class FakeTenant:
    """A client bound to one instance, same surface as a bound OdooClient."""

    def __init__(self, server: "FakeOdooServer", database: str, login: str, password: str):
        self.server = server
        self.database = database
        self.login = login
        self.password = password
        self.uid: Optional[int] = None

    def _instance(self) -> FakeInstance:
        instance = self.server.instances.get(self.database)
        if instance is None:
            raise RemoteCallError(f"database {self.database} does not exist")
        return instance

    async def authenticate(self) -> OdooIdentity:
        self.server.record("authenticate", self.database)
        instance = self._instance()
        if self.server.auth_failures_remaining > 0:
            self.server.auth_failures_remaining -= 1
            raise RemoteCallError("Database is still initializing")
        if (self.login, self.password) != (instance.params.admin_login, instance.params.admin_password):
            raise RemoteCallError(f"Access denied for {self.login} on {self.database}")
        self.uid = 2
        return OdooIdentity(uid=2, database=self.database, login=self.login)

    async def search(self, model, domain, options=None):
        self.server.record("search", model, domain)
        return _filter(self._instance().records[model], domain)

    async def search_read(self, model, domain, fields=None, options=None, context=None):
        self.server.record("search_read", model, domain)
        records = self._instance().records[model]
        rows = [dict(records[i]) for i in _filter(records, domain)]
        if fields:
            rows = [{k: v for k, v in row.items() if k in fields or k == "id"} for row in rows]
        return rows

    async def read(self, model, ids, fields=None, context=None):
        self.server.record("read", model, ids)
        records = self._instance().records[model]
        return [dict(records[i]) for i in ids if i in records]

    async def create(self, model, values, context=None):
        self.server.record("create", model, values)
        instance = self._instance()
        record_id = instance.next_id()
        instance.records[model][record_id] = {"id": record_id, **values}
        return record_id

    async def write(self, model, ids, values, context=None):
        self.server.record("write", model, ids, values)
        records = self._instance().records[model]
        for record_id in ids:
            if record_id not in records:
                raise RemoteCallError(f"Record {model}({record_id}) does not exist")
            records[record_id].update(values)
        return True

    async def unlink(self, model, ids, context=None):
        self.server.record("unlink", model, ids)
        records = self._instance().records[model]
        for record_id in ids:
            records.pop(record_id, None)
        return True

    async def execute(self, model, method, args=None, kwargs=None):
        self.server.record("execute", model, method, args)
        records = self._instance().records[model]
        if method == "button_immediate_install":
            for record_id in args[0]:
                records[record_id]["state"] = "installed"
            return None
        if method == "button_immediate_uninstall":
            for record_id in args[0]:
                records[record_id]["state"] = "uninstalled"
            return None
        raise RemoteCallError(f"Method {method} not found on {model}")

    async def name_search(self, model, name, domain=None, limit=100):
        self.server.record("name_search", model, name)
        records = self._instance().records[model]
        return [(r["id"], r.get("name")) for r in records.values() if name.lower() in str(r.get("name", "")).lower()][
            :limit
        ]

    async def fields_get(self, model, fields=None):
        self.server.record("fields_get", model)
        return {"name": {"string": "Name", "type": "char", "required": True}}

    async def search_by_external_id(self, external_id):
        self.server.record("search_by_external_id", external_id)
        return None

    async def read_by_external_id(self, external_id, fields=None):
        self.server.record("read_by_external_id", external_id)
        return None

    async def create_with_external_id(self, model, values, external_id, context=None):
        return await self.create(model, values, context)


class FakeOdooServer:
    """
    In-memory ERP server.

    ``fail_next(method, error)`` queues an exception raised by the next call
    of that method, before it has any effect. ``calls`` records every call in
    order as ``(method, *args)``.
    """

    def __init__(self):
        self.instances: Dict[str, FakeInstance] = {}
        self.calls: List[Tuple[Any, ...]] = []
        self.failures: Dict[str, Deque[BaseException]] = defaultdict(deque)
        self.auth_failures_remaining = 0
        self.database = None
        self.base_url = "http://erp.test:8069"

    def record(self, method: str, *args: Any) -> None:
        self.calls.append((method, *args))
        queue = self.failures.get(method)
        if queue:
            raise queue.popleft()

    def fail_next(self, method: str, error: Optional[BaseException] = None, times: int = 1) -> None:
        for _ in range(times):
            self.failures[method].append(error or RemoteCallError("connection refused", kind=FailureKind.CONNECTION_REFUSED))

    def call_names(self) -> List[str]:
        return [call[0] for call in self.calls]

    def bind(self, database: str, login: str, password: str) -> FakeTenant:
        return FakeTenant(self, database, login, password)

    async def create_instance(self, params: CreateInstanceParams) -> bool:
        self.record("create_instance", params.name)
        if params.name in self.instances:
            raise RemoteCallError(f"Database {params.name} already exists")
        self.instances[params.name] = FakeInstance(params)
        return True

    async def delete_instance(self, master_password: str, name: str) -> bool:
        self.record("delete_instance", name)
        if master_password != settings.ODOO_MASTER_PASSWORD:
            raise RemoteCallError("Access Denied")
        if name not in self.instances:
            raise RemoteCallError(f"Database {name} does not exist")
        del self.instances[name]
        return True

    async def list_instances(self) -> List[str]:
        self.record("list_instances")
        return sorted(self.instances)

    async def instance_exists(self, name: str) -> bool:
        self.record("instance_exists", name)
        return name in self.instances

    async def aclose(self) -> None:
        pass


@pytest.fixture
def fake_server() -> FakeOdooServer:
    return FakeOdooServer()


@pytest.fixture
def tenant_instance(fake_server: FakeOdooServer) -> FakeTenant:
    """A ready instance on the fake server and a client bound to it."""
    params = CreateInstanceParams(
        master_password="master-secret",
        name="odoo_test_12345678",
        admin_login="admin_test",
        admin_password="pw",
    )
    fake_server.instances[params.name] = FakeInstance(params)
    return fake_server.bind(params.name, params.admin_login, params.admin_password)


TENANT_ORG_ID = "org-tenant-1"


@pytest.fixture
def active_record(test_session: Session, tenant_instance: FakeTenant) -> ProvisioningRecord:
    """An ACTIVE provisioning record pointing at ``tenant_instance``."""
    record = ProvisioningRecord(
        organization_id=TENANT_ORG_ID,
        instance_name=tenant_instance.database,
        admin_login=tenant_instance.login,
        admin_password_encrypted=encrypt_secret(tenant_instance.password),
        service_url="http://erp.test:8069",
        provisioning_status=ProvisioningStatus.ACTIVE,
    )
    test_session.add(record)
    test_session.commit()
    test_session.refresh(record)
    return record


@pytest.fixture
def client_manager(test_engine, fake_server, fake_clock, audit_log, idempotency_store) -> ClientManager:
    return ClientManager(
        test_engine,
        fake_server,
        clock=fake_clock,
        ttl_seconds=3600,
        audit_log=audit_log,
        idempotency=idempotency_store,
    )
