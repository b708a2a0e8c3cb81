"""
Workflow orchestration for the dashboard's business processes.

Every public workflow returns a ``WorkflowResult`` and never raises. Steps are
API client calls or entity store reads/writes executed by a ``WorkflowRun``;
outcomes are published as ``WorkflowEvent``s on the event bus.
"""
import uuid
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

import structlog

from ..config import Settings, get_settings
from ..core.models import EntityKind, InvoiceStatus, UpdateEvent, as_utc, utcnow
from ..core.stores import EntityRegistry
from ..integrations import endpoints
from ..integrations.api_client import ResilientClient
from ..integrations.errors import UnknownError, ValidationError
from ..monitoring.metrics import metrics
from ..realtime.channel import UpdateIngestionChannel
from .events import EventBus, EventPriority, EventType, WorkflowEvent
from .run import WorkflowResult, WorkflowRun
from .scheduler import DeferredScheduler

logger = structlog.get_logger(__name__)

INVOICE_EXPIRATION_KEY = "invoice-expiration:{invoice_id}"
SYSTEM_HEALTH_KEY = "system-health:{token}"
EXPIRATION_FIELDS = ("expiration_hours", "expirationHours", "expiration_time", "expirationTime")

EXPORT_FORMATS = ("csv", "json", "excel", "pdf")
EXPORT_ROLES = {
    "transactions": {"user", "merchant", "admin"},
    "invoices": {"merchant", "admin"},
    "users": {"admin"},
    "audit_logs": {"admin"},
}
MAX_EXPORT_RANGE = timedelta(days=366)


def _to_amount(value: Any, field: str = "amount") -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid {field}: {value!r}", code="INVALID_AMOUNT") from None
    if not amount.is_finite():
        raise ValidationError(f"Invalid {field}: {value!r}", code="INVALID_AMOUNT")
    return amount


def _to_datetime(value: Any, field: str) -> datetime:
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, str) and value:
        try:
            return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            pass
    raise ValidationError(f"Invalid {field}: {value!r}", code="INVALID_DATE")


def identify_critical_issues(health: Dict[str, Any], threshold: float = 0.9) -> List[str]:
    """
    List critical problems in a system health report.

    Flags a ``down`` system, services that are down or degraded, and
    system load, memory or disk usage above ``threshold``.
    """
    issues: List[str] = []
    if health.get("status") == "down":
        issues.append("System is down")

    services = health.get("services") or []
    if isinstance(services, dict):
        services = [{"name": name, "status": status} for name, status in services.items()]
    for service in services:
        status = service.get("status")
        if status in ("down", "degraded"):
            issues.append(f"{service.get('name', 'unknown')} service is {status}")

    usage = health.get("metrics") or {}
    for key, label in (
        ("systemLoad", "High system load detected"),
        ("memoryUsage", "High memory usage detected"),
        ("diskUsage", "High disk usage detected"),
    ):
        value = usage.get(key)
        if isinstance(value, (int, float)) and value > threshold:
            issues.append(label)
    return issues


class WorkflowOrchestrator:
    """
    Sequences multi-step processes on top of the API client and entity stores.

    Wires itself into its collaborators on construction:
    - entity-bearing client responses flow into the registry
    - client session expiry tears down timers and stores
    - channel reconnects resync snapshots and reschedule invoice timers
    """

    def __init__(
        self,
        client: ResilientClient,
        registry: EntityRegistry,
        settings: Optional[Settings] = None,
        event_bus: Optional[EventBus] = None,
        scheduler: Optional[DeferredScheduler] = None,
        channel: Optional[UpdateIngestionChannel] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.client = client
        self.registry = registry
        self.settings = settings or get_settings()
        self.events = event_bus or EventBus()
        self._clock = clock
        self.scheduler = scheduler or DeferredScheduler(clock=clock)
        self.channel = channel
        self.active_runs: Dict[str, WorkflowRun] = {}
        self.user: Optional[Dict[str, Any]] = None
        self.merchant_dashboard: Optional[Dict[str, Any]] = None
        self.system_health: Optional[Dict[str, Any]] = None
        self._session_generation = 0

        client.set_entity_sink(registry.ingest)
        client.add_session_expired_listener(self._on_session_expired)
        if channel is not None:
            channel.set_resync(self.resync)
            channel.add_reconnect_listener(self.reschedule_invoice_expirations)

        logger.info("workflow_orchestrator_initialized")

    @property
    def role(self) -> str:
        return str((self.user or {}).get("role") or "user")

    # ------------------------------------------------------------------
    # Run execution and notifications
    # ------------------------------------------------------------------

    def _notify(
        self,
        event_type: EventType,
        title: str,
        message: str,
        run: Optional[WorkflowRun] = None,
        category: str = "system",
        priority: EventPriority = EventPriority.MEDIUM,
        action_url: Optional[str] = None,
    ) -> None:
        self.events.publish(
            WorkflowEvent(
                type=event_type,
                title=title,
                message=message,
                category=category,
                priority=priority,
                workflow=run.name if run else None,
                run_id=run.run_id if run else None,
                action_url=action_url,
            )
        )

    async def _execute(
        self,
        run: WorkflowRun,
        on_success: Optional[Callable[[WorkflowResult], None]] = None,
        failure_title: Optional[str] = None,
        warning_title: str = "Completed With Warnings",
        category: str = "system",
        failure_priority: EventPriority = EventPriority.HIGH,
    ) -> WorkflowResult:
        self.active_runs[run.run_id] = run
        try:
            result = await run.execute()
            for warning in result.warnings:
                self._notify(EventType.WARNING, warning_title, warning, run=run, category=category)
            if result.success and on_success is not None:
                on_success(result)
            elif not result.success and failure_title:
                self._notify(
                    EventType.ERROR,
                    failure_title,
                    result.error_message or "Unexpected error",
                    run=run,
                    category=category,
                    priority=failure_priority,
                )
        finally:
            self.active_runs.pop(run.run_id, None)
        metrics.record_workflow_run(run.name, run.status.value)
        return result

    def _cancel_timers(self) -> int:
        """Cancel pending timers and stop recurring jobs already in flight from re-arming."""
        self._session_generation += 1
        return self.scheduler.cancel_all(forget_fired=True)

    def _on_session_expired(self, reason: str) -> None:
        cancelled = self._cancel_timers()
        self.registry.clear()
        self.user = None
        logger.warning("session_teardown", reason=reason, timers_cancelled=cancelled)
        self._notify(
            EventType.ERROR,
            "Session Expired",
            "Your session has expired. Please sign in again.",
            category="security",
            priority=EventPriority.HIGH,
            action_url="/login",
        )

    # ------------------------------------------------------------------
    # Dashboard data
    # ------------------------------------------------------------------

    async def _load_dashboard(self) -> Dict[str, int]:
        role = self.role
        loaded: Dict[str, int] = {}
        if role == "user":
            response = await self.client.get(endpoints.WALLETS)
            loaded["wallets"] = self.registry.load_snapshot(EntityKind.WALLET.value, response.data)
            response = await self.client.get(endpoints.TRANSACTIONS, params={"page": 1, "limit": 20})
            loaded["transactions"] = self.registry.ingest(EntityKind.TRANSACTION.value, response.data)
        elif role == "merchant":
            response = await self.client.get(endpoints.MERCHANT_DASHBOARD)
            self.merchant_dashboard = response.payload
            response = await self.client.get(endpoints.MERCHANT_INVOICES, params={"page": 1, "limit": 20})
            loaded["invoices"] = self.registry.ingest(EntityKind.INVOICE.value, response.data)
            self.reschedule_invoice_expirations()
        elif role == "admin":
            response = await self.client.get(endpoints.ADMIN_SYSTEM_HEALTH)
            self.system_health = response.payload
        logger.info("dashboard_loaded", role=role, **loaded)
        return loaded

    async def resync(self) -> Dict[str, int]:
        """Re-fetch authoritative snapshots; raises on client errors."""
        if not self.client.is_authenticated():
            return {}
        return await self._load_dashboard()

    async def refresh_dashboard(self) -> WorkflowResult:
        run = WorkflowRun("refresh_dashboard")
        run.add_step("load", lambda ctx: self._load_dashboard())
        return await self._execute(run, failure_title="Dashboard Refresh Failed")

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def login(self, email: str, password: str) -> WorkflowResult:
        run = WorkflowRun("login")

        async def authenticate(ctx: Dict[str, Any]) -> Dict[str, Any]:
            data = await self.client.login(email, password)
            self.user = data.get("user") or {}
            ctx["result"] = self.user
            return self.user

        run.add_step("authenticate", authenticate)
        run.add_step("dashboard_preload", lambda ctx: self._load_dashboard(), optional=True)

        def welcome(result: WorkflowResult) -> None:
            name = (self.user or {}).get("firstName")
            self._notify(
                EventType.SUCCESS,
                "Welcome Back",
                f"Signed in as {name}." if name else "Signed in successfully.",
                run=run,
                category="account",
                priority=EventPriority.LOW,
            )

        return await self._execute(
            run,
            on_success=welcome,
            failure_title="Sign In Failed",
            warning_title="Dashboard Setup Incomplete",
            category="account",
        )

    async def logout(self) -> WorkflowResult:
        """Cancel all timers, clear every store, then end the session."""
        run = WorkflowRun("logout")

        async def end_session(ctx: Dict[str, Any]) -> None:
            await self.client.logout()
            self.user = None
            self.merchant_dashboard = None
            self.system_health = None

        run.add_step("cancel_timers", lambda ctx: self._cancel_timers())
        run.add_step("clear_stores", lambda ctx: self.registry.clear())
        run.add_step("end_session", end_session)

        return await self._execute(
            run,
            on_success=lambda result: self._notify(
                EventType.INFO, "Signed Out", "You have been signed out.", run=run, category="account"
            ),
            failure_title="Sign Out Failed",
            category="account",
        )

    async def onboard_user(self, registration: Dict[str, Any]) -> WorkflowResult:
        """
        Register an account and prepare it for first use.

        Steps: register, welcome notification, role-specific setup (default
        wallets for users, setup notices for merchants and admins) and an
        optional dashboard preload whose failure only produces a warning.
        """
        run = WorkflowRun("onboard_user")

        async def register(ctx: Dict[str, Any]) -> Dict[str, Any]:
            data = await self.client.register(registration)
            user = data.get("user") or {}
            if "role" not in user and registration.get("role"):
                user = {**user, "role": registration["role"]}
            self.user = user
            ctx["user"] = user
            ctx["result"] = user
            return user

        def welcome(ctx: Dict[str, Any]) -> None:
            self._notify(
                EventType.SUCCESS,
                "Welcome to Paylo!",
                "Your account has been created successfully.",
                run=run,
                category="account",
            )

        async def role_setup(ctx: Dict[str, Any]) -> List[Any]:
            role = self.role
            if role == "merchant":
                self._notify(
                    EventType.INFO,
                    "Merchant Account Setup",
                    "Complete your business profile to start accepting payments.",
                    run=run,
                    category="account",
                    action_url="/merchant/settings",
                )
                return []
            if role == "admin":
                self._notify(
                    EventType.INFO,
                    "Admin Access Granted",
                    "You have administrator access to the platform.",
                    run=run,
                    category="security",
                )
                return []

            wallets = []
            for blockchain in self.settings.supported_blockchains:
                response = await self.client.post(
                    endpoints.WALLETS,
                    {"blockchain": blockchain, "label": f"My {blockchain.capitalize()} Wallet"},
                    entity_kind=EntityKind.WALLET.value,
                )
                wallets.append(response.payload)
            self._notify(
                EventType.INFO,
                "Wallets Created",
                f"Default wallets created for {', '.join(self.settings.supported_blockchains)}.",
                run=run,
                category="wallet",
            )
            return wallets

        run.add_step("register", register)
        run.add_step("welcome", welcome)
        run.add_step("role_setup", role_setup)
        run.add_step("dashboard_preload", lambda ctx: self._load_dashboard(), optional=True)

        return await self._execute(
            run,
            failure_title="Registration Failed",
            warning_title="Dashboard Setup Incomplete",
            category="account",
        )

    # ------------------------------------------------------------------
    # Payments and invoices
    # ------------------------------------------------------------------

    async def submit_payment(self, payment: Dict[str, Any]) -> WorkflowResult:
        """
        Validate and submit a P2P or merchant payment.

        P2P payments need both addresses, a positive amount and enough balance
        in the source wallet; merchant payments need an invoice id.
        """
        payment_type = payment.get("type", "p2p")
        from_address = payment.get("from_address")
        run = WorkflowRun("submit_payment")

        def validate(ctx: Dict[str, Any]) -> Decimal:
            amount = _to_amount(payment.get("amount"))
            if amount <= 0:
                raise ValidationError("Payment amount must be positive", code="INVALID_AMOUNT")
            if payment_type == "p2p":
                if not from_address or not payment.get("to_address"):
                    raise ValidationError(
                        "Source and destination addresses are required", code="MISSING_ADDRESS"
                    )
            elif payment_type == "merchant":
                if not payment.get("invoice_id"):
                    raise ValidationError("Invoice id is required", code="MISSING_INVOICE")
            else:
                raise ValidationError(f"Unsupported payment type: {payment_type}", code="INVALID_PAYMENT_TYPE")
            ctx["amount"] = amount
            return amount

        async def check_balance(ctx: Dict[str, Any]) -> Decimal:
            wallet = self.registry.wallets.by_address(from_address)
            if wallet is not None:
                balance = wallet.balance
            else:
                response = await self.client.get(
                    endpoints.WALLET_BALANCE.format(address=quote(from_address, safe=""))
                )
                payload = response.payload if isinstance(response.payload, dict) else {}
                balance = _to_amount(payload.get("balance", 0), "balance")
            if balance < ctx["amount"]:
                raise ValidationError(
                    "Insufficient balance",
                    code="INSUFFICIENT_BALANCE",
                    details={"available": str(balance), "requested": str(ctx["amount"])},
                )
            return balance

        async def submit(ctx: Dict[str, Any]) -> Any:
            idempotency_key = payment.get("idempotency_key") or str(uuid.uuid4())
            if payment_type == "p2p":
                url = endpoints.PAYMENTS_P2P
                body = {
                    "fromAddress": from_address,
                    "toAddress": payment["to_address"],
                    "amount": str(ctx["amount"]),
                    "blockchain": payment.get("blockchain"),
                    "memo": payment.get("memo"),
                }
            else:
                url = endpoints.PAYMENTS_MERCHANT
                body = {
                    "invoiceId": payment["invoice_id"],
                    "fromAddress": from_address,
                    "amount": str(ctx["amount"]),
                }
            response = await self.client.post(
                url,
                body,
                idempotency_key=idempotency_key,
                entity_kind=EntityKind.TRANSACTION.value,
            )
            ctx["transaction"] = response.payload
            ctx["result"] = response.payload
            return response.payload

        async def refresh_source_wallet(ctx: Dict[str, Any]) -> None:
            if not from_address:
                return
            wallet = self.registry.wallets.by_address(from_address)
            if wallet is None:
                return
            response = await self.client.get(
                endpoints.WALLET_BALANCE.format(address=quote(from_address, safe=""))
            )
            if not isinstance(response.payload, dict):
                return
            transaction = ctx.get("transaction")
            self.registry.apply(
                UpdateEvent(
                    kind=EntityKind.WALLET.value,
                    id=wallet.id,
                    new_value={k: v for k, v in response.payload.items() if k != "id"},
                    timestamp=self._clock(),
                    cause_id=transaction.get("id") if isinstance(transaction, dict) else None,
                )
            )

        run.add_step("validate", validate)
        if payment_type == "p2p":
            run.add_step("check_balance", check_balance)
        run.add_step("submit", submit)
        run.add_step("refresh_source_wallet", refresh_source_wallet, optional=True)

        def submitted(result: WorkflowResult) -> None:
            transaction = result.value if isinstance(result.value, dict) else {}
            self._notify(
                EventType.SUCCESS,
                "Payment Submitted",
                f"Your payment of {run.context['amount']} has been submitted.",
                run=run,
                category="transaction",
                action_url=f"/transactions/{transaction['id']}" if transaction.get("id") else None,
            )

        return await self._execute(
            run,
            on_success=submitted,
            failure_title="Payment Failed",
            warning_title="Balance Refresh Failed",
            category="transaction",
        )

    def _schedule_invoice_expiration(self, invoice_id: str, fallback: Optional[datetime] = None) -> bool:
        invoice = self.registry.invoices.get(invoice_id)
        if invoice is not None and invoice.status != InvoiceStatus.PENDING:
            return False
        expires_at = invoice.expiration_time if invoice is not None and invoice.expiration_time else fallback
        if expires_at is None:
            return False
        return self.scheduler.schedule(
            INVOICE_EXPIRATION_KEY.format(invoice_id=invoice_id),
            as_utc(expires_at),
            lambda: self._expire_invoice(invoice_id),
        )

    def _expire_invoice(self, invoice_id: str) -> None:
        if not self.registry.invoices.mark_expired(invoice_id, cause_id="invoice_expiration"):
            logger.info("invoice_expiration_skipped", invoice_id=invoice_id)
            return
        logger.info("invoice_expired", invoice_id=invoice_id)
        self._notify(
            EventType.WARNING,
            "Invoice Expired",
            f"Invoice {invoice_id} has expired without payment.",
            category="invoice",
            action_url=f"/merchant/invoices/{invoice_id}",
        )

    def reschedule_invoice_expirations(self) -> int:
        """Schedule expiration for every pending invoice from its stored expiration time."""
        scheduled = 0
        for invoice in self.registry.invoices.pending():
            if self._schedule_invoice_expiration(invoice.id):
                scheduled += 1
        return scheduled

    def _invoice_expiry(self, invoice: Dict[str, Any]) -> Optional[datetime]:
        """Absolute expiry from ``expiration_hours`` or ``expiration_time``; None when neither is given."""
        hours = invoice.get("expiration_hours", invoice.get("expirationHours"))
        if hours is not None:
            try:
                hours = float(hours)
            except (TypeError, ValueError):
                raise ValidationError(f"Invalid expiration_hours: {hours!r}", code="INVALID_EXPIRATION") from None
            if not 0 < hours < float("inf"):
                raise ValidationError("Expiration hours must be positive", code="INVALID_EXPIRATION")
            return self._clock() + timedelta(hours=hours)
        raw = invoice.get("expiration_time", invoice.get("expirationTime"))
        if raw is None:
            return None
        return _to_datetime(raw, "expiration_time")

    async def manage_invoice_lifecycle(self, invoice: Dict[str, Any]) -> WorkflowResult:
        """
        Create an invoice and schedule its expiration.

        The invoice must have a positive amount and a supported currency.
        Expiration is optional and given either as ``expiration_hours`` from
        now or as an absolute ``expiration_time`` in the future. When present,
        expiration is scheduled at the invoice's stored ``expiration_time``; a
        still-pending invoice is then marked expired and one "Invoice Expired"
        warning is published.
        """
        run = WorkflowRun("manage_invoice_lifecycle")

        def validate(ctx: Dict[str, Any]) -> None:
            amount = _to_amount(invoice.get("amount"))
            if amount <= 0:
                raise ValidationError("Invoice amount must be positive", code="INVALID_AMOUNT")
            currency = str(invoice.get("currency") or "").lower()
            if currency not in self.settings.supported_blockchains:
                raise ValidationError(f"Unsupported currency: {invoice.get('currency')}", code="INVALID_CURRENCY")
            expires_at = self._invoice_expiry(invoice)
            if expires_at is not None and expires_at <= self._clock():
                raise ValidationError("Expiration time must be in the future", code="INVALID_EXPIRATION")
            ctx["amount"] = amount
            ctx["currency"] = currency
            ctx["expires_at"] = expires_at

        async def create(ctx: Dict[str, Any]) -> Any:
            body = {
                "amount": str(ctx["amount"]),
                "currency": ctx["currency"],
                "description": invoice.get("description"),
            }
            if ctx["expires_at"] is not None:
                body["expirationTime"] = ctx["expires_at"].isoformat()
            response = await self.client.post(
                endpoints.MERCHANT_INVOICES,
                body,
                idempotency_key=invoice.get("idempotency_key"),
                entity_kind=EntityKind.INVOICE.value,
            )
            payload = response.payload
            if not isinstance(payload, dict) or "id" not in payload:
                raise UnknownError("Invoice response has no id", status=response.status, code="MALFORMED_RESPONSE")
            invoice_id = str(payload["id"])
            ctx["invoice_id"] = invoice_id
            ctx["result"] = self.registry.invoices.get(invoice_id) or payload
            return invoice_id

        def schedule_expiration(ctx: Dict[str, Any]) -> str:
            self._schedule_invoice_expiration(ctx["invoice_id"], fallback=ctx["expires_at"])
            return INVOICE_EXPIRATION_KEY.format(invoice_id=ctx["invoice_id"])

        run.add_step("validate", validate)
        run.add_step("create", create)
        if any(invoice.get(key) is not None for key in EXPIRATION_FIELDS):
            run.add_step(
                "schedule_expiration",
                schedule_expiration,
                compensation=lambda ctx, key: self.scheduler.cancel(key),
            )

        return await self._execute(
            run,
            on_success=lambda result: self._notify(
                EventType.SUCCESS,
                "Invoice Created",
                f"Invoice {run.context['invoice_id']} is awaiting payment.",
                run=run,
                category="invoice",
                action_url=f"/merchant/invoices/{run.context['invoice_id']}",
            ),
            failure_title="Invoice Creation Failed",
            category="invoice",
        )

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    async def create_user(self, user_data: Dict[str, Any]) -> WorkflowResult:
        run = WorkflowRun("create_user")

        def authorize(ctx: Dict[str, Any]) -> None:
            if self.role != "admin":
                raise ValidationError("Administrator role required", status=403, code="FORBIDDEN")

        async def create(ctx: Dict[str, Any]) -> Any:
            response = await self.client.post(endpoints.ADMIN_USERS, user_data)
            ctx["result"] = response.payload
            return response.payload

        run.add_step("authorize", authorize).add_step("create", create)
        return await self._execute(
            run,
            on_success=lambda result: self._notify(
                EventType.SUCCESS,
                "User Created",
                f"User {user_data.get('email') or 'account'} has been created.",
                run=run,
                category="admin",
            ),
            failure_title="User Creation Failed",
            category="admin",
        )

    async def export_data(self, request: Dict[str, Any]) -> WorkflowResult:
        """
        Export data after permission and compliance checks.

        ``request`` holds ``type`` (transactions, invoices, users, audit_logs),
        ``format`` (csv, json, excel, pdf), ``purpose``, and optionally
        ``date_range`` (``from``/``to``), ``filters``, ``include_personal_data``
        and ``requested_by``. Every accepted request is written to the audit log.
        """
        export_type = request.get("type")
        run = WorkflowRun("export_data")

        def check_permissions(ctx: Dict[str, Any]) -> None:
            allowed = EXPORT_ROLES.get(str(export_type))
            if allowed is None:
                raise ValidationError(f"Unsupported export type: {export_type}", code="INVALID_EXPORT_TYPE")
            if self.role not in allowed:
                raise ValidationError(
                    "Insufficient permissions for data export", status=403, code="FORBIDDEN"
                )

        def check_compliance(ctx: Dict[str, Any]) -> None:
            if request.get("format") not in EXPORT_FORMATS:
                raise ValidationError(f"Unsupported export format: {request.get('format')}", code="INVALID_FORMAT")
            if not str(request.get("purpose") or "").strip():
                raise ValidationError("An export purpose is required", code="COMPLIANCE_REJECTED")
            date_range = request.get("date_range")
            if date_range:
                start = _to_datetime(date_range.get("from"), "date_range.from")
                end = _to_datetime(date_range.get("to"), "date_range.to")
                if start > end:
                    raise ValidationError("Date range start is after its end", code="INVALID_DATE")
                if end - start > MAX_EXPORT_RANGE:
                    raise ValidationError(
                        "Date range exceeds the maximum export window", code="COMPLIANCE_REJECTED"
                    )

        def audit(ctx: Dict[str, Any]) -> None:
            logger.info(
                "data_export_audit",
                run_id=run.run_id,
                export_type=export_type,
                export_format=request.get("format"),
                requested_by=request.get("requested_by") or (self.user or {}).get("id"),
                purpose=request.get("purpose"),
                include_personal_data=bool(request.get("include_personal_data")),
            )

        async def export(ctx: Dict[str, Any]) -> Dict[str, Any]:
            data_type = "analytics" if export_type == "audit_logs" else export_type
            body = {
                "format": request["format"],
                "dateRange": request.get("date_range"),
                "filters": request.get("filters"),
                "includePersonalData": bool(request.get("include_personal_data")),
            }
            response = await self.client.post(endpoints.EXPORT.format(data_type=data_type), body)
            payload = response.payload if isinstance(response.payload, dict) else {}
            result = {"download_url": payload.get("downloadUrl"), "export": response.payload}
            ctx["result"] = result
            return result

        run.add_step("check_permissions", check_permissions)
        run.add_step("check_compliance", check_compliance)
        run.add_step("audit", audit)
        run.add_step("export", export)

        return await self._execute(
            run,
            on_success=lambda result: self._notify(
                EventType.SUCCESS,
                "Export Ready",
                f"Your {export_type} export is ready for download.",
                run=run,
                category="export",
                action_url=result.value.get("download_url"),
            ),
            failure_title="Export Failed",
            category="export",
        )

    async def check_system_health(self, schedule_next: bool = False) -> WorkflowResult:
        """
        Fetch system health and alert on critical issues.

        With ``schedule_next`` the check re-runs every
        ``health_check_interval_seconds`` until timers are cancelled.
        """
        run = WorkflowRun("check_system_health")
        generation = self._session_generation

        async def fetch(ctx: Dict[str, Any]) -> Dict[str, Any]:
            response = await self.client.get(endpoints.ADMIN_SYSTEM_HEALTH)
            health = response.payload if isinstance(response.payload, dict) else {}
            self.system_health = health
            return health

        def detect(ctx: Dict[str, Any]) -> List[str]:
            health = ctx["fetch_result"]
            issues = identify_critical_issues(health, self.settings.critical_usage_threshold)
            ctx["result"] = {"health": health, "issues": issues}
            if issues:
                self._notify(
                    EventType.ERROR,
                    "Critical System Issues Detected",
                    f"{len(issues)} critical issues found: {', '.join(issues)}",
                    run=run,
                    priority=EventPriority.CRITICAL,
                )
            return issues

        run.add_step("fetch", fetch).add_step("detect", detect)
        result = await self._execute(
            run,
            failure_title="System Monitoring Error",
            failure_priority=EventPriority.CRITICAL,
        )

        if schedule_next and generation == self._session_generation:
            self.scheduler.schedule(
                SYSTEM_HEALTH_KEY.format(token=uuid.uuid4().hex),
                self._clock() + timedelta(seconds=self.settings.health_check_interval_seconds),
                lambda: self.check_system_health(schedule_next=True),
                once=False,
            )
        elif schedule_next:
            logger.info("system_health_schedule_stopped", reason="timers_cancelled")
        return result

    # ------------------------------------------------------------------
    # Connectivity
    # ------------------------------------------------------------------

    async def handle_connection_change(self, is_online: bool) -> WorkflowResult:
        """Resync and reschedule when back online; warn when offline."""
        if not is_online:
            self._notify(
                EventType.WARNING,
                "Connection Lost",
                "You are now offline. Some features may be limited.",
                priority=EventPriority.HIGH,
            )
            return WorkflowResult(success=True, value=False)

        run = WorkflowRun("connection_restored")
        run.add_step("resync", lambda ctx: self.resync())
        run.add_step("reschedule_timers", lambda ctx: self.reschedule_invoice_expirations())
        return await self._execute(
            run,
            on_success=lambda result: self._notify(
                EventType.SUCCESS,
                "Connection Restored",
                "You are back online. Data has been synchronized.",
                run=run,
            ),
            failure_title="Synchronization Failed",
        )

    async def shutdown(self) -> None:
        """Cancel timers, stop the channel and close the client."""
        self._cancel_timers()
        if self.channel is not None:
            await self.channel.stop()
        await self.client.close()
        await self.events.drain()
