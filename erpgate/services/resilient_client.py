"""
Resilient ERP client.

Wraps the raw JSON-RPC client with idempotency de-duplication, a per-client
circuit breaker, bounded retries and a per-attempt audit trail.

Per call:
    1. idempotent creates: return a cached success, fail fast on a
       duplicate still processing, otherwise claim the key
    2. refuse with CircuitOpenError while the breaker is open
    3. run the attempts, writing one audit row per attempt
    4. record the final outcome on the breaker and the idempotency key

Audit and idempotency bookkeeping never masks the outcome of the call.
"""

import random
import time
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from erpgate.core.circuit_breaker import BreakerConfig, CircuitBreaker
from erpgate.core.clock import Clock, system_clock
from erpgate.core.config import settings
from erpgate.core.context import get_organization_id, get_user_id
from erpgate.core.exceptions import CircuitOpenError, OperationInProgressError
from erpgate.core.retry import RetryExecutor, RetryHooks, RetryPolicy, classify_failure
from erpgate.models.audit import AuditStatus
from erpgate.models.idempotency import IdempotencyStatus
from erpgate.services.audit_log import AttemptRecord, AuditLogService
from erpgate.services.idempotency import IdempotencyStore, fingerprint

logger = structlog.get_logger(__name__)


def default_retry_policy() -> RetryPolicy:
    return RetryPolicy(
        max_retries=settings.RPC_MAX_RETRIES,
        initial_delay=settings.RPC_INITIAL_DELAY,
        max_delay=settings.RPC_MAX_DELAY,
        backoff_multiplier=settings.RPC_BACKOFF_MULTIPLIER,
    )


def default_breaker_config() -> BreakerConfig:
    return BreakerConfig(
        failure_threshold=settings.BREAKER_FAILURE_THRESHOLD,
        success_threshold=settings.BREAKER_SUCCESS_THRESHOLD,
        timeout=settings.BREAKER_TIMEOUT,
        monitoring_period=settings.BREAKER_MONITORING_PERIOD,
    )


def new_operation_id(operation: str) -> str:
    return f"{operation}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


@dataclass
class CallInfo:
    """What is being called, for audit rows and idempotency fingerprints."""

    operation: str
    model: Optional[str] = None
    method: Optional[str] = None
    record_ids: Optional[List[int]] = None
    domain: Optional[List[Any]] = None
    payload: Optional[Dict[str, Any]] = None
    idempotent: bool = False
    organization_id: Optional[str] = None
    user_id: Optional[str] = None


@dataclass
class ClientMetrics:
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    retried_requests: int = 0
    total_duration_ms: int = 0  # successful calls only


class _AuditHooks(RetryHooks):
    """Writes one audit row per attempt. Attempts are 0-based here, 1-based in the log."""

    def __init__(
        self,
        audit_log: AuditLogService,
        call: CallInfo,
        operation_id: str,
        max_retries: int,
        breaker: CircuitBreaker,
    ):
        self.audit_log = audit_log
        self.call = call
        self.operation_id = operation_id
        self.max_retries = max_retries
        self.breaker = breaker
        self._entry_id: Optional[int] = None
        self.attempts = 0
        self.last_duration_ms = 0

    @property
    def enabled(self) -> bool:
        return self.call.organization_id is not None

    async def before_attempt(self, attempt: int) -> None:
        self.attempts = attempt + 1
        logger.info(
            "Executing ERP operation",
            operation_id=self.operation_id,
            operation=self.call.operation,
            model=self.call.model,
            attempt=attempt + 1,
            max_attempts=self.max_retries + 1,
            circuit_state=self.breaker.state.value,
        )
        if not self.enabled:
            return
        self._entry_id = self.audit_log.log_attempt_start(
            AttemptRecord(
                operation_id=self.operation_id,
                operation_type=self.call.operation,
                attempt_number=attempt + 1,
                max_retries=self.max_retries,
                target_model=self.call.model,
                target_method=self.call.method,
                record_ids=self.call.record_ids,
                domain=self.call.domain,
                request_payload=self.call.payload,
                circuit_state=self.breaker.state.value,
                user_id=self.call.user_id,
                organization_id=self.call.organization_id,
            )
        )

    async def on_success(self, attempt: int, result: Any, duration_ms: int) -> None:
        self.last_duration_ms = duration_ms
        if self.enabled:
            self.audit_log.finish_attempt(
                self._entry_id,
                AuditStatus.SUCCESS,
                response_data=result,
                duration_ms=duration_ms,
            )

    async def on_failure(self, attempt: int, error: BaseException, will_retry: bool, duration_ms: int) -> None:
        self.last_duration_ms = duration_ms
        kind = classify_failure(error)
        logger.error(
            "ERP operation attempt failed",
            operation_id=self.operation_id,
            operation=self.call.operation,
            model=self.call.model,
            attempt=attempt + 1,
            duration_ms=duration_ms,
            failure_kind=kind.value,
            will_retry=will_retry,
            error=str(error),
        )
        if self.enabled:
            self.audit_log.finish_attempt(
                self._entry_id,
                AuditStatus.RETRYING if will_retry else AuditStatus.FAILED,
                error=error,
                failure_kind=kind.value,
                duration_ms=duration_ms,
            )


class ResilientClient:
    """
    Same surface as OdooClient, every call wrapped with resilience.

    One breaker per instance; breaker state is not shared between clients
    or processes.
    """

    def __init__(
        self,
        client: Any,
        audit_log: AuditLogService,
        idempotency: IdempotencyStore,
        policy: Optional[RetryPolicy] = None,
        breaker_config: Optional[BreakerConfig] = None,
        clock: Clock = system_clock,
        rand: Callable[[], float] = random.random,
        organization_id: Optional[str] = None,
        user_id: Optional[str] = None,
        name: Optional[str] = None,
    ):
        self.client = client
        self.audit_log = audit_log
        self.idempotency = idempotency
        self.policy = policy or default_retry_policy()
        self.organization_id = organization_id
        self.user_id = user_id
        self.name = name or getattr(client, "database", None) or "erp"
        self.breaker = CircuitBreaker(self.name, breaker_config or default_breaker_config(), clock)
        self.executor = RetryExecutor(self.policy, clock=clock, rand=rand)
        self.metrics = ClientMetrics()

    async def _execute(self, operation: Callable[[], Awaitable[Any]], call: CallInfo) -> Any:
        call.organization_id = call.organization_id or self.organization_id or get_organization_id()
        call.user_id = call.user_id or self.user_id or get_user_id()
        operation_id = new_operation_id(call.operation)
        self.metrics.total_requests += 1

        idempotency_key = None
        if call.idempotent and call.organization_id:
            idempotency_key = fingerprint(call.operation, call.model, call.payload or {}, call.organization_id)
            existing = self.idempotency.check_key(idempotency_key)
            if existing and existing.status == IdempotencyStatus.SUCCESS:
                logger.info(
                    "Returning cached result from idempotency key",
                    operation_id=operation_id,
                    idempotency_key=idempotency_key,
                    cached_operation_id=existing.operation_id,
                )
                self.metrics.successful_requests += 1
                return existing.result_data
            if existing and existing.status == IdempotencyStatus.PROCESSING:
                self.metrics.failed_requests += 1
                raise OperationInProgressError(idempotency_key)
            if existing and existing.status == IdempotencyStatus.FAILED:
                logger.warning(
                    "Previous attempt failed, allowing retry",
                    operation_id=operation_id,
                    idempotency_key=idempotency_key,
                )
            claimed = self.idempotency.create_key(
                idempotency_key,
                call.operation,
                call.model,
                operation_id,
                call.organization_id,
                user_id=call.user_id,
            )
            if not claimed:
                self.metrics.failed_requests += 1
                raise OperationInProgressError(idempotency_key)

        if not self.breaker.allow_request():
            self.metrics.failed_requests += 1
            error = CircuitOpenError(self.name, self.breaker.retry_after())
            logger.error(
                "Request blocked by circuit breaker",
                operation_id=operation_id,
                operation=call.operation,
                model=call.model,
                circuit=self.name,
                retry_after_seconds=round(error.retry_after, 3),
            )
            if idempotency_key:
                # Nothing ran, so the key must not stay in processing
                self.idempotency.update_key(idempotency_key, IdempotencyStatus.FAILED, error=str(error))
            raise error

        hooks = _AuditHooks(self.audit_log, call, operation_id, self.policy.max_retries, self.breaker)
        try:
            result = await self.executor.run(operation, hooks=hooks, description=call.operation)
        except Exception as e:
            self.metrics.failed_requests += 1
            self.breaker.record_failure()
            if idempotency_key:
                self.idempotency.update_key(idempotency_key, IdempotencyStatus.FAILED, error=str(e))
            logger.error(
                "ERP operation failed after all retries",
                operation_id=operation_id,
                operation=call.operation,
                model=call.model,
                total_attempts=hooks.attempts,
                failure_kind=classify_failure(e).value,
                error=str(e),
                circuit_state=self.breaker.state.value,
            )
            raise

        self.metrics.successful_requests += 1
        self.metrics.total_duration_ms += hooks.last_duration_ms
        if hooks.attempts > 1:
            self.metrics.retried_requests += 1
            logger.info("Operation succeeded after retry", operation_id=operation_id, total_attempts=hooks.attempts)
        self.breaker.record_success()
        if idempotency_key:
            self.idempotency.update_key(idempotency_key, IdempotencyStatus.SUCCESS, result=result)

        logger.info(
            "ERP operation succeeded",
            operation_id=operation_id,
            operation=call.operation,
            model=call.model,
            duration_ms=hooks.last_duration_ms,
        )
        return result

    # Observability

    def get_metrics(self) -> Dict[str, Any]:
        m = self.metrics
        return {
            "total_requests": m.total_requests,
            "successful_requests": m.successful_requests,
            "failed_requests": m.failed_requests,
            "retried_requests": m.retried_requests,
            "circuit_breaker_trips": self.breaker.trips,
            "total_duration_ms": m.total_duration_ms,
            "average_duration_ms": round(m.total_duration_ms / m.successful_requests) if m.successful_requests else 0,
            "success_rate": (
                f"{m.successful_requests / m.total_requests * 100:.2f}%" if m.total_requests else "N/A"
            ),
            "circuit_state": self.breaker.state.value,
            "recent_failures_count": len(self.breaker.snapshot.recent_failures),
        }

    def get_circuit_status(self) -> Dict[str, Any]:
        return self.breaker.status()

    # Session and model operations

    async def authenticate(self):
        return await self._execute(self.client.authenticate, CallInfo("authenticate"))

    async def search(self, model: str, domain: List[Any], options: Optional[Dict[str, Any]] = None):
        return await self._execute(
            lambda: self.client.search(model, domain, options),
            CallInfo("search", model=model, domain=domain),
        )

    async def search_read(
        self,
        model: str,
        domain: List[Any],
        fields: Optional[List[str]] = None,
        options: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        return await self._execute(
            lambda: self.client.search_read(model, domain, fields, options, context),
            CallInfo("search_read", model=model, domain=domain),
        )

    async def read(
        self,
        model: str,
        ids: List[int],
        fields: Optional[List[str]] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        return await self._execute(
            lambda: self.client.read(model, ids, fields, context),
            CallInfo("read", model=model, record_ids=ids),
        )

    async def create(
        self,
        model: str,
        values: Dict[str, Any],
        context: Optional[Dict[str, Any]] = None,
        organization_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ):
        """Create a record. Idempotent when an organization id is known."""
        return await self._execute(
            lambda: self.client.create(model, values, context),
            CallInfo(
                "create",
                model=model,
                payload={"model": model, "values": values, "context": context},
                idempotent=True,
                organization_id=organization_id,
                user_id=user_id,
            ),
        )

    async def write(
        self,
        model: str,
        ids: List[int],
        values: Dict[str, Any],
        context: Optional[Dict[str, Any]] = None,
    ):
        return await self._execute(
            lambda: self.client.write(model, ids, values, context),
            CallInfo("write", model=model, record_ids=ids, payload={"values": values}),
        )

    async def unlink(self, model: str, ids: List[int], context: Optional[Dict[str, Any]] = None):
        return await self._execute(
            lambda: self.client.unlink(model, ids, context),
            CallInfo("unlink", model=model, record_ids=ids),
        )

    async def execute(
        self,
        model: str,
        method: str,
        args: Optional[List[Any]] = None,
        kwargs: Optional[Dict[str, Any]] = None,
    ):
        return await self._execute(
            lambda: self.client.execute(model, method, args, kwargs),
            CallInfo("execute", model=model, method=method, payload={"args": args, "kwargs": kwargs}),
        )

    async def action(
        self,
        model: str,
        action_name: str,
        record_ids: List[int],
        context: Optional[Dict[str, Any]] = None,
    ):
        """Call a button/action method on records, e.g. ``button_immediate_install``."""
        kwargs = {"context": context} if context else {}
        return await self._execute(
            lambda: self.client.execute(model, action_name, [record_ids], kwargs),
            CallInfo("action", model=model, method=action_name, record_ids=record_ids),
        )

    async def name_search(self, model: str, name: str, domain: Optional[List[Any]] = None, limit: int = 100):
        return await self._execute(
            lambda: self.client.name_search(model, name, domain, limit),
            CallInfo("name_search", model=model, domain=domain),
        )

    async def fields_get(self, model: str, fields: Optional[List[str]] = None):
        return await self._execute(lambda: self.client.fields_get(model, fields), CallInfo("fields_get", model=model))

    async def search_by_external_id(self, external_id: str):
        return await self._execute(
            lambda: self.client.search_by_external_id(external_id),
            CallInfo("search_by_external_id", payload={"external_id": external_id}),
        )

    async def read_by_external_id(self, external_id: str, fields: Optional[List[str]] = None):
        return await self._execute(
            lambda: self.client.read_by_external_id(external_id, fields),
            CallInfo("read_by_external_id", payload={"external_id": external_id}),
        )

    async def create_with_external_id(
        self,
        model: str,
        values: Dict[str, Any],
        external_id: str,
        context: Optional[Dict[str, Any]] = None,
        organization_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ):
        return await self._execute(
            lambda: self.client.create_with_external_id(model, values, external_id, context),
            CallInfo(
                "create_with_external_id",
                model=model,
                payload={"model": model, "values": values, "external_id": external_id, "context": context},
                idempotent=True,
                organization_id=organization_id,
                user_id=user_id,
            ),
        )

    # Instance lifecycle

    async def create_instance(self, params):
        return await self._execute(
            lambda: self.client.create_instance(params),
            CallInfo("create_instance", payload={"name": params.name, "admin_login": params.admin_login}),
        )

    async def delete_instance(self, master_password: str, name: str, organization_id: Optional[str] = None):
        return await self._execute(
            lambda: self.client.delete_instance(master_password, name),
            CallInfo("delete_instance", payload={"name": name}, organization_id=organization_id),
        )

    async def instance_exists(self, name: str, organization_id: Optional[str] = None) -> bool:
        return await self._execute(
            lambda: self.client.instance_exists(name),
            CallInfo("instance_exists", payload={"name": name}, organization_id=organization_id),
        )

    async def list_instances(self, organization_id: Optional[str] = None) -> List[str]:
        return await self._execute(self.client.list_instances, CallInfo("list_instances", organization_id=organization_id))


__all__ = [
    "ResilientClient",
    "CallInfo",
    "ClientMetrics",
    "default_retry_policy",
    "default_breaker_config",
    "new_operation_id",
]
