"""
Origination Service Module

Entry point for callers: product-bound simulations, application creation and
every lifecycle action. Each status write runs inside one storage transaction
(version check, application save, history insert, audit entry); domain events
are published only after that transaction commits.
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union
import logging

from .applications import (
    ActorType, ApplicantType, Application, ApplicationStateMachine, RejectionReason,
    RiskLevel, StatusHistoryEntry, TransitionOutcome, SYSTEM_ACTOR_ID
)
from .audit import AuditTrail, AuditEventType
from .calculator import LoanCalculator, LoanSimulation, PaymentFrequency
from .config import OriginationConfig, get_config
from .events import EventDispatcher
from .exceptions import (
    ConcurrentModificationError, ConvergenceFailureError, FieldValidationError, MissingRequiredFieldError,
    NotFoundError, ValidationFailure
)
from .logging_config import log_action
from .products import ProductCatalog
from .status import ApplicationStatus
from .storage import StorageInterface, to_storable

logger = logging.getLogger("origination.service")

APPLICATIONS_TABLE = "applications"
HISTORY_TABLE = "application_status_history"


@dataclass
class TransitionResult:
    """Outcome of transition(): success with the new status, or a typed failure"""
    success: bool
    application_id: str
    new_status: Optional[ApplicationStatus] = None
    history_entry_id: Optional[str] = None
    current_status: Optional[ApplicationStatus] = None
    attempted_status: Optional[ApplicationStatus] = None
    error_reason: Optional[str] = None
    error_code: Optional[str] = None
    field: Optional[str] = None

    @classmethod
    def succeeded(cls, application: Application, history_entry_id: str) -> 'TransitionResult':
        return cls(
            success=True,
            application_id=application.id,
            new_status=application.status,
            history_entry_id=history_entry_id,
        )

    @classmethod
    def failed(
        cls,
        application_id: str,
        current_status: Optional[ApplicationStatus],
        attempted_status: Optional[ApplicationStatus],
        error: ValidationFailure
    ) -> 'TransitionResult':
        return cls(
            success=False,
            application_id=application_id,
            current_status=current_status,
            attempted_status=attempted_status,
            error_reason=error.message,
            error_code=error.code,
            field=getattr(error, "field", None),
        )

    def to_dict(self) -> Dict[str, Any]:
        if self.success:
            return {
                'success': True,
                'new_status': self.new_status.code,
                'history_entry_id': self.history_entry_id,
            }
        return to_storable({
            'success': False,
            'current_status': self.current_status,
            'attempted_status': self.attempted_status,
            'error_reason': self.error_reason,
            'error_code': self.error_code,
            'field': self.field,
        })


class OriginationService:
    """
    Orchestrates the calculation engine, product catalog and application state
    machine over a storage backend
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: Optional[AuditTrail] = None,
        dispatcher: Optional[EventDispatcher] = None,
        catalog: Optional[ProductCatalog] = None,
        calculator: Optional[LoanCalculator] = None,
        state_machine: Optional[ApplicationStateMachine] = None,
        settings: Optional[OriginationConfig] = None
    ):
        self.storage = storage
        self.settings = settings or get_config()
        self.audit_trail = audit_trail or AuditTrail(storage)
        self.dispatcher = dispatcher or EventDispatcher()
        self.catalog = catalog or ProductCatalog(storage, self.audit_trail)
        self.calculator = calculator or LoanCalculator(
            max_payments=self.settings.max_payments,
            cat_tolerance=self.settings.cat_tolerance,
            cat_max_iterations=self.settings.cat_max_iterations,
        )
        self.state_machine = state_machine or ApplicationStateMachine(
            calculator=self.calculator,
            approve_on_counter_offer_acceptance=self.settings.approve_on_counter_offer_acceptance,
            counter_offer_min_amount=self.settings.counter_offer_min_amount,
            counter_offer_max_term_months=self.settings.counter_offer_max_term_months,
            draft_expiry_days=self.settings.draft_expiry_days,
        )

    # ------------------------------------------------------------------
    # Simulation
    # ------------------------------------------------------------------

    def simulate(
        self,
        product_id: str,
        amount: Union[Decimal, int, str],
        term_months: int,
        payment_frequency: Union[PaymentFrequency, str],
        first_payment_date: Optional[date] = None
    ) -> LoanSimulation:
        """
        Simulate a loan under a product's rules and pricing

        Raises:
            NotFoundError: Unknown product
            ProductRuleError: Product unavailable or terms outside its bounds
            InvalidCalculationInputError: Invalid inputs
            ConvergenceFailureError: CAT did not converge (logged as an anomaly)
        """
        product = self.catalog.get_available_product(product_id)
        amount = Decimal(str(amount))
        frequency = PaymentFrequency.normalize(payment_frequency)
        product.validate_terms(amount, term_months, frequency)
        try:
            return self.calculator.simulate(
                amount, term_months, frequency, product.annual_rate,
                product.opening_commission_rate, first_payment_date
            )
        except ConvergenceFailureError:
            logger.error(
                "CAT did not converge for product %s: amount=%s term=%s frequency=%s",
                product_id, amount, term_months, frequency.code, exc_info=True
            )
            raise

    # ------------------------------------------------------------------
    # Generic transition
    # ------------------------------------------------------------------

    def transition(
        self,
        application_id: str,
        target_status: Union[ApplicationStatus, str],
        actor_id: str,
        actor_type: Union[ActorType, str],
        reason: Optional[str] = None,
        notes: Optional[str] = None
    ) -> TransitionResult:
        """
        Move an application to target_status

        Validation failures come back as a failed TransitionResult with the
        application untouched and no history row. Unknown application ids raise
        NotFoundError; CAT convergence failures propagate.
        """
        application = self.get_application(application_id)
        try:
            target = ApplicationStatus.from_code(target_status)
        except ValueError as exc:
            return TransitionResult.failed(
                application_id, application.status, None, FieldValidationError("status", str(exc))
            )

        try:
            actor_type = actor_type if isinstance(actor_type, ActorType) else ActorType(actor_type)
        except ValueError as exc:
            return TransitionResult.failed(
                application_id, application.status, target, FieldValidationError("actor_type", str(exc))
            )

        try:
            if target == ApplicationStatus.REJECTED:
                outcome = self.state_machine.reject(application, actor_id, reason, notes=notes)
            else:
                outcome = self.state_machine.change_status(
                    application, target, actor_id, actor_type, notes=notes, reason=reason
                )
            self.commit_outcome(outcome, application.version, actor_id)
        except ValidationFailure as exc:
            log_action(
                logger, "warning",
                f"Transition {application.status.code} -> {target.code} denied: {exc.message}",
                user_id=actor_id,
                action="status_change_denied",
                resource=f"application:{application_id}",
                extra={"error_code": exc.code}
            )
            return TransitionResult.failed(application_id, application.status, target, exc)
        except ConvergenceFailureError:
            logger.error("CAT did not converge while approving application %s", application_id, exc_info=True)
            raise

        return TransitionResult.succeeded(outcome.application, outcome.history_entry.id)

    # ------------------------------------------------------------------
    # Lifecycle actions (raise typed errors)
    # ------------------------------------------------------------------

    def create_application(
        self,
        tenant_id: str,
        product_id: str,
        applicant_id: str,
        amount: Union[Decimal, int, str],
        term_months: int,
        payment_frequency: Union[PaymentFrequency, str],
        purpose: Optional[str] = None,
        applicant_type: ApplicantType = ApplicantType.INDIVIDUAL
    ) -> Application:
        """Create a DRAFT application after checking the product rules"""
        product = self.catalog.get_available_product(product_id)
        amount = Decimal(str(amount))
        frequency = PaymentFrequency.normalize(payment_frequency)
        product.validate_terms(amount, term_months, frequency)

        outcome = self.state_machine.open_application(
            tenant_id, product, applicant_id, amount, term_months, frequency,
            purpose=purpose, applicant_type=applicant_type
        )
        return self.commit_outcome(
            outcome, None, applicant_id,
            audit_event=AuditEventType.APPLICATION_CREATED,
            audit_metadata={
                "product_id": product_id,
                "requested_amount": amount,
                "requested_term_months": term_months,
                "payment_frequency": frequency.code,
            }
        )

    def update_loan_terms(
        self,
        application_id: str,
        amount: Optional[Union[Decimal, int, str]] = None,
        term_months: Optional[int] = None,
        payment_frequency: Optional[Union[PaymentFrequency, str]] = None,
        purpose: Optional[str] = None,
        updated_by: Optional[str] = None
    ) -> Application:
        application = self.get_application(application_id)
        product = self.catalog.get_product(application.product_id)
        outcome = self.state_machine.update_loan_terms(
            application, amount, term_months, payment_frequency, purpose, product=product
        )
        updated = outcome.application
        return self.commit_outcome(
            outcome, application.version, updated_by or application.applicant_id,
            audit_event=AuditEventType.APPLICATION_TERMS_UPDATED,
            audit_metadata={
                "requested_amount": updated.requested_amount,
                "requested_term_months": updated.requested_term_months,
                "payment_frequency": updated.payment_frequency.code,
            }
        )

    def submit(
        self,
        application_id: str,
        account_id: str,
        applicant_data: Optional[Dict[str, Any]] = None,
        ip: Optional[str] = None,
        device: Optional[str] = None
    ) -> Application:
        """Submit a draft; the purpose must be filled in first"""
        application = self.get_application(application_id)
        if not application.purpose or not application.purpose.strip():
            raise MissingRequiredFieldError("purpose", "A loan purpose is required before submitting")

        snapshot = {
            "applicant": applicant_data or {},
            "loan": {
                "product_id": application.product_id,
                "requested_amount": application.requested_amount,
                "requested_term_months": application.requested_term_months,
                "payment_frequency": application.payment_frequency.code,
                "interest_rate": application.interest_rate,
                "purpose": application.purpose,
            },
            "captured_at": datetime.now(timezone.utc),
        }
        outcome = self.state_machine.submit(application, account_id, snapshot, ip=ip, device=device)
        return self.commit_outcome(outcome, application.version, account_id)

    def approve(
        self,
        application_id: str,
        staff_id: str,
        amount: Optional[Union[Decimal, int, str]] = None,
        term_months: Optional[int] = None,
        interest_rate: Optional[Union[Decimal, int, str]] = None,
        payment_frequency: Optional[Union[PaymentFrequency, str]] = None,
        notes: Optional[str] = None
    ) -> Application:
        application = self.get_application(application_id)
        product = self.catalog.get_product(application.product_id)
        try:
            outcome = self.state_machine.approve(
                application, staff_id, amount=amount, term_months=term_months,
                interest_rate=interest_rate, payment_frequency=payment_frequency, notes=notes,
                product=product
            )
        except ConvergenceFailureError:
            logger.error("CAT did not converge while approving application %s", application_id, exc_info=True)
            raise
        return self.commit_outcome(outcome, application.version, staff_id)

    def reject(
        self,
        application_id: str,
        staff_id: str,
        reason: Optional[str],
        rejection_code: Optional[RejectionReason] = None,
        notes: Optional[str] = None
    ) -> Application:
        application = self.get_application(application_id)
        outcome = self.state_machine.reject(application, staff_id, reason, rejection_code, notes)
        return self.commit_outcome(outcome, application.version, staff_id)

    def cancel(
        self,
        application_id: str,
        cancelled_by: str,
        actor_type: ActorType = ActorType.STAFF,
        reason: Optional[str] = None
    ) -> Application:
        application = self.get_application(application_id)
        outcome = self.state_machine.cancel(application, cancelled_by, actor_type, reason)
        return self.commit_outcome(outcome, application.version, cancelled_by)

    def mark_synced(
        self,
        application_id: str,
        external_id: str,
        system: str,
        sync_data: Optional[Dict[str, Any]] = None
    ) -> Application:
        application = self.get_application(application_id)
        outcome = self.state_machine.mark_synced(application, external_id, system, sync_data)
        return self.commit_outcome(outcome, application.version, SYSTEM_ACTOR_ID)

    def send_counter_offer(
        self,
        application_id: str,
        staff_id: str,
        amount: Union[Decimal, int, str],
        term_months: int,
        interest_rate: Union[Decimal, int, str],
        payment_frequency: Optional[Union[PaymentFrequency, str]] = None,
        reason: Optional[str] = None
    ) -> Application:
        """Propose alternate terms, bounded by the application's product"""
        application = self.get_application(application_id)
        product = self.catalog.get_product(application.product_id)
        outcome = self.state_machine.send_counter_offer(
            application, staff_id, amount, term_months, interest_rate,
            payment_frequency=payment_frequency, reason=reason, product=product
        )
        offer = outcome.application.counter_offer
        return self.commit_outcome(
            outcome, application.version, staff_id,
            audit_event=AuditEventType.COUNTER_OFFER_SENT,
            audit_metadata={
                "amount": offer.amount,
                "term_months": offer.term_months,
                "interest_rate": offer.interest_rate,
                "payment_frequency": offer.payment_frequency.code,
                "reason": reason,
            }
        )

    def respond_to_counter_offer(self, application_id: str, accepted: bool, account_id: str) -> Application:
        application = self.get_application(application_id)
        outcome = self.state_machine.respond_to_counter_offer(application, accepted, account_id)
        return self.commit_outcome(
            outcome, application.version, account_id,
            audit_event=AuditEventType.COUNTER_OFFER_ANSWERED,
            audit_metadata={"accepted": accepted}
        )

    def assign(self, application_id: str, staff_id: str, assigned_by: str) -> Application:
        application = self.get_application(application_id)
        outcome = self.state_machine.assign(application, staff_id, assigned_by)
        return self.commit_outcome(
            outcome, application.version, assigned_by,
            audit_event=AuditEventType.APPLICATION_ASSIGNED,
            audit_metadata={"assigned_to": staff_id, "previous_assignee": application.assigned_to}
        )

    def set_risk_assessment(
        self,
        application_id: str,
        level: Union[RiskLevel, str],
        data: Optional[Dict[str, Any]] = None,
        assessed_by: Optional[str] = None
    ) -> Application:
        application = self.get_application(application_id)
        outcome = self.state_machine.set_risk_assessment(application, level, data)
        return self.commit_outcome(
            outcome, application.version, assessed_by,
            audit_event=AuditEventType.RISK_ASSESSED,
            audit_metadata={"risk_level": outcome.application.risk_level}
        )

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def expire_drafts(self, now: Optional[datetime] = None) -> List[Application]:
        """Cancel drafts past their expiry date as the system actor"""
        now = now or datetime.now(timezone.utc)
        expired = []
        for application in self.list_applications(status=ApplicationStatus.DRAFT):
            if not application.is_expired(now):
                continue
            outcome = self.state_machine.cancel(
                application, SYSTEM_ACTOR_ID, ActorType.SYSTEM, reason="expired", now=now
            )
            expired.append(self.commit_outcome(outcome, application.version, SYSTEM_ACTOR_ID))
        if expired:
            logger.info("Expired %d draft applications", len(expired))
        return expired

    def find_stale_applications(self, now: Optional[datetime] = None) -> List[Application]:
        """Applications in active processing not updated within the stale threshold"""
        now = now or datetime.now(timezone.utc)
        return [
            application for application in self.list_applications()
            if application.is_stale(now, self.settings.stale_after_hours)
        ]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_application(self, application_id: str) -> Application:
        data = self.storage.load(APPLICATIONS_TABLE, application_id)
        if data is None:
            raise NotFoundError("application", application_id)
        return Application.from_dict(data)

    def list_applications(
        self,
        status: Optional[ApplicationStatus] = None,
        tenant_id: Optional[str] = None,
        applicant_id: Optional[str] = None,
        assigned_to: Optional[str] = None
    ) -> List[Application]:
        filters = {}
        if status:
            filters["status"] = status.code
        if tenant_id:
            filters["tenant_id"] = tenant_id
        if applicant_id:
            filters["applicant_id"] = applicant_id
        if assigned_to:
            filters["assigned_to"] = assigned_to
        return [Application.from_dict(data) for data in self.storage.find(APPLICATIONS_TABLE, filters)]

    def get_status_history(self, application_id: str) -> List[StatusHistoryEntry]:
        """History rows for an application, oldest first"""
        rows = self.storage.find(HISTORY_TABLE, {"application_id": application_id})
        entries = [StatusHistoryEntry.from_dict(row) for row in rows]
        entries.sort(key=lambda entry: entry.created_at)
        return entries

    def allowed_next_statuses(self, application_id: str, include_internal: bool = True) -> List[ApplicationStatus]:
        application = self.get_application(application_id)
        return self.state_machine.allowed_next_statuses(application, include_internal)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def commit_outcome(
        self,
        outcome: TransitionOutcome,
        expected_version: Optional[int],
        actor_id: Optional[str],
        audit_event: Optional[AuditEventType] = None,
        audit_metadata: Optional[Dict[str, Any]] = None
    ) -> Application:
        """
        Persist a state machine outcome atomically, then publish its events

        expected_version is the version the caller read; None for a new
        application. A mismatch with the stored version means another writer
        got there first and nothing is written.

        Raises:
            ConcurrentModificationError: Stored version differs from expected_version
        """
        application = outcome.application
        history_entry = outcome.history_entry

        audit_written = False
        try:
            with self.storage.atomic():
                stored = self.storage.load(APPLICATIONS_TABLE, application.id)
                stored_version = stored["version"] if stored is not None else None
                if stored_version != expected_version:
                    raise ConcurrentModificationError(application.id, expected_version, stored_version)

                application.version = (expected_version or 0) + 1
                self.storage.save(APPLICATIONS_TABLE, application.id, application.to_dict())
                if history_entry is not None:
                    self.storage.insert(HISTORY_TABLE, history_entry.id, history_entry.to_dict())

                if self.settings.enable_audit_logging:
                    audit_written = True
                    if history_entry is not None:
                        self.audit_trail.log_event(
                            event_type=AuditEventType.APPLICATION_STATUS_CHANGED,
                            entity_type="application",
                            entity_id=application.id,
                            metadata={
                                "from_status": history_entry.from_status.code,
                                "to_status": history_entry.to_status.code,
                                "changed_by_type": history_entry.changed_by_type.value,
                                "reason": history_entry.reason,
                                "history_entry_id": history_entry.id,
                            },
                            user_id=actor_id
                        )
                    if audit_event is not None:
                        self.audit_trail.log_event(
                            event_type=audit_event,
                            entity_type="application",
                            entity_id=application.id,
                            metadata=audit_metadata or {},
                            user_id=actor_id
                        )
        except BaseException:
            # the chain head must not point at an event that was rolled back
            if audit_written:
                self.audit_trail.reload()
            raise

        if history_entry is not None:
            log_action(
                logger, "info",
                f"Application {application.id} moved "
                f"{history_entry.from_status.code} -> {history_entry.to_status.code}",
                user_id=actor_id,
                action="status_change",
                resource=f"application:{application.id}",
                extra={"history_entry_id": history_entry.id, "version": application.version}
            )

        if self.settings.enable_events:
            self.dispatcher.publish_many(outcome.events)

        return application
