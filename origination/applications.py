"""
Credit Application Module

Application entity, embedded counter offer, append-only status history and the
state machine that is the only writer of Application.status.

The state machine is pure: every operation works on a copy of the application
and returns a TransitionOutcome holding the updated application, the history
row to append (if the status changed) and the domain events to publish. The
caller owns persistence and event dispatch.
"""

from decimal import Decimal
from datetime import datetime, timezone, timedelta
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional
from enum import Enum
import copy
import uuid

from .calculator import LoanCalculator, LoanSimulation, PaymentFrequency
from .config import get_config
from .events import DomainEvent, EventPayload
from .exceptions import (
    ApplicationNotEditableError, CounterOfferError, FieldValidationError,
    InvalidTransitionError, MissingRequiredFieldError
)
from .products import LoanProduct
from .status import (
    ApplicationStatus, ACTIVE_PROCESSING_STATUSES, REVIEW_STATUSES,
    allowed_transitions, validate_transition
)
from .storage import StorageRecord, parse_datetime, parse_decimal, to_storable


class ActorType(Enum):
    """Who performed an action"""
    STAFF = "staff"
    APPLICANT = "applicant"
    SYSTEM = "system"


class ApplicantType(Enum):
    INDIVIDUAL = "INDIVIDUAL"
    COMPANY = "COMPANY"   # Declared for completeness; not accepted yet


class RiskLevel(Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    VERY_HIGH = "VERY_HIGH"


class RejectionReason(Enum):
    """Catalogued rejection reasons"""
    SCORE_BAJO = ("SCORE_BAJO", "Score crediticio bajo")
    INGRESOS_INSUFICIENTES = ("INGRESOS_INSUFICIENTES", "Ingresos insuficientes")
    HISTORIAL_NEGATIVO = ("HISTORIAL_NEGATIVO", "Historial crediticio negativo")
    DOCUMENTACION_FALSA = ("DOCUMENTACION_FALSA", "Documentación falsa o inconsistente")
    REFERENCIAS_NO_VERIFICADAS = ("REFERENCIAS_NO_VERIFICADAS", "Referencias no verificadas")
    SOBREENDEUDAMIENTO = ("SOBREENDEUDAMIENTO", "Sobreendeudamiento")
    POLITICAS_INTERNAS = ("POLITICAS_INTERNAS", "No cumple políticas internas")
    OTRO = ("OTRO", "Otro motivo")

    def __init__(self, code: str, label: str):
        self.code = code
        self.label = label


SYSTEM_ACTOR_ID = "system"

STATUS_EVENTS = {
    ApplicationStatus.SUBMITTED: DomainEvent.APPLICATION_SUBMITTED,
    ApplicationStatus.IN_REVIEW: DomainEvent.APPLICATION_IN_REVIEW,
    ApplicationStatus.DOCS_PENDING: DomainEvent.APPLICATION_DOCS_PENDING,
    ApplicationStatus.CORRECTIONS_PENDING: DomainEvent.APPLICATION_CORRECTIONS_REQUESTED,
    ApplicationStatus.APPROVED: DomainEvent.APPLICATION_APPROVED,
    ApplicationStatus.REJECTED: DomainEvent.APPLICATION_REJECTED,
    ApplicationStatus.CANCELLED: DomainEvent.APPLICATION_CANCELLED,
    ApplicationStatus.SYNCED: DomainEvent.APPLICATION_SYNCED,
    ApplicationStatus.DISBURSED: DomainEvent.APPLICATION_DISBURSED,
}


@dataclass(frozen=True)
class LoanTerms:
    """Amount, term, rate and frequency of a loan"""
    amount: Decimal
    term_months: int
    interest_rate: Decimal
    payment_frequency: PaymentFrequency


@dataclass
class CounterOffer:
    """Alternate terms proposed by staff; accepted is None until the applicant answers"""
    amount: Decimal
    term_months: int
    interest_rate: Decimal
    payment_frequency: PaymentFrequency
    offered_by: str
    offered_at: datetime
    periodic_payment: Decimal
    total_amount: Decimal
    cat: Decimal
    reason: Optional[str] = None
    accepted: Optional[bool] = None
    responded_at: Optional[datetime] = None
    responded_by: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.accepted is None

    @property
    def terms(self) -> LoanTerms:
        return LoanTerms(self.amount, self.term_months, self.interest_rate, self.payment_frequency)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CounterOffer':
        data = dict(data)
        for key in ('amount', 'interest_rate', 'periodic_payment', 'total_amount', 'cat'):
            data[key] = parse_decimal(data[key])
        data['payment_frequency'] = PaymentFrequency.normalize(data['payment_frequency'])
        data['offered_at'] = parse_datetime(data['offered_at'])
        data['responded_at'] = parse_datetime(data.get('responded_at'))
        return cls(**data)


@dataclass
class StatusHistoryEntry(StorageRecord):
    """One row per successful status change; never updated"""
    application_id: str
    from_status: ApplicationStatus
    to_status: ApplicationStatus
    changed_by: str
    changed_by_type: ActorType
    notes: Optional[str] = None
    reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StatusHistoryEntry':
        data = dict(data)
        data['created_at'] = parse_datetime(data['created_at'])
        data['updated_at'] = parse_datetime(data['updated_at'])
        data['from_status'] = ApplicationStatus.from_code(data['from_status'])
        data['to_status'] = ApplicationStatus.from_code(data['to_status'])
        data['changed_by_type'] = ActorType(data['changed_by_type'])
        return cls(**data)


@dataclass
class Application(StorageRecord):
    """Credit application"""
    tenant_id: str
    product_id: str
    applicant_id: str
    requested_amount: Decimal
    requested_term_months: int
    interest_rate: Decimal
    payment_frequency: PaymentFrequency
    opening_commission_rate: Decimal = Decimal("0")
    status: ApplicationStatus = ApplicationStatus.DRAFT
    applicant_type: ApplicantType = ApplicantType.INDIVIDUAL
    purpose: Optional[str] = None
    version: int = 1

    # Figures from the latest simulation of the requested terms
    periodic_payment: Optional[Decimal] = None
    total_amount: Optional[Decimal] = None
    total_interest: Optional[Decimal] = None
    opening_commission: Optional[Decimal] = None
    cat: Optional[Decimal] = None

    # Terms fixed at approval
    approved_amount: Optional[Decimal] = None
    approved_term_months: Optional[int] = None
    approved_interest_rate: Optional[Decimal] = None
    approved_payment_frequency: Optional[PaymentFrequency] = None
    approved_periodic_payment: Optional[Decimal] = None
    approved_total_amount: Optional[Decimal] = None
    approved_cat: Optional[Decimal] = None

    counter_offer: Optional[CounterOffer] = None

    # Staff-only
    risk_level: Optional[RiskLevel] = None
    risk_data: Dict[str, Any] = field(default_factory=dict)
    assigned_to: Optional[str] = None
    assigned_by: Optional[str] = None
    assigned_at: Optional[datetime] = None

    # Submission
    snapshot_data: Dict[str, Any] = field(default_factory=dict)
    submitted_by: Optional[str] = None
    submission_ip: Optional[str] = None
    submission_device: Optional[str] = None

    # Decision and closure
    decision_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    rejection_code: Optional[RejectionReason] = None
    cancellation_reason: Optional[str] = None

    # External core banking sync
    external_id: Optional[str] = None
    external_system: Optional[str] = None
    sync_data: Dict[str, Any] = field(default_factory=dict)

    # Derived timestamps
    submitted_at: Optional[datetime] = None
    decision_at: Optional[datetime] = None
    disbursed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    synced_at: Optional[datetime] = None
    status_changed_at: Optional[datetime] = None
    status_changed_by: Optional[str] = None
    status_changed_by_type: Optional[ActorType] = None
    expires_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Application':
        data = dict(data)
        for key in ('created_at', 'updated_at', 'assigned_at', 'submitted_at', 'decision_at',
                    'disbursed_at', 'cancelled_at', 'synced_at', 'status_changed_at', 'expires_at'):
            data[key] = parse_datetime(data.get(key))
        for key in ('requested_amount', 'interest_rate', 'opening_commission_rate', 'periodic_payment',
                    'total_amount', 'total_interest', 'opening_commission', 'cat', 'approved_amount',
                    'approved_interest_rate', 'approved_periodic_payment', 'approved_total_amount',
                    'approved_cat'):
            data[key] = parse_decimal(data.get(key))
        data['status'] = ApplicationStatus.from_code(data['status'])
        data['applicant_type'] = ApplicantType(data['applicant_type'])
        data['payment_frequency'] = PaymentFrequency.normalize(data['payment_frequency'])
        if data.get('approved_payment_frequency'):
            data['approved_payment_frequency'] = PaymentFrequency.normalize(data['approved_payment_frequency'])
        if data.get('counter_offer'):
            data['counter_offer'] = CounterOffer.from_dict(data['counter_offer'])
        if data.get('risk_level'):
            data['risk_level'] = RiskLevel(data['risk_level'])
        if data.get('rejection_code'):
            data['rejection_code'] = RejectionReason[data['rejection_code']]
        if data.get('status_changed_by_type'):
            data['status_changed_by_type'] = ActorType(data['status_changed_by_type'])
        return cls(**data)

    @property
    def requested_terms(self) -> LoanTerms:
        return LoanTerms(self.requested_amount, self.requested_term_months,
                         self.interest_rate, self.payment_frequency)

    @property
    def has_pending_counter_offer(self) -> bool:
        return self.counter_offer is not None and self.counter_offer.is_pending

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_editable(self) -> bool:
        return self.status == ApplicationStatus.DRAFT

    def effective_terms(self) -> LoanTerms:
        """Accepted counter offer terms, otherwise the requested terms"""
        if self.counter_offer is not None and self.counter_offer.accepted:
            return self.counter_offer.terms
        return self.requested_terms

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return (
            self.status == ApplicationStatus.DRAFT
            and self.expires_at is not None
            and self.expires_at <= now
        )

    def is_stale(self, now: Optional[datetime] = None, stale_after_hours: Optional[int] = None) -> bool:
        """In active processing and untouched for longer than the threshold"""
        now = now or datetime.now(timezone.utc)
        hours = stale_after_hours if stale_after_hours is not None else get_config().stale_after_hours
        return (
            self.status in ACTIVE_PROCESSING_STATUSES
            and self.updated_at < now - timedelta(hours=hours)
        )


@dataclass
class TransitionOutcome:
    """Result of a state machine operation, for the caller to persist and publish"""
    application: Application
    history_entry: Optional[StatusHistoryEntry] = None
    events: List[EventPayload] = field(default_factory=list)


class ApplicationStateMachine:
    """
    Validates and executes application status changes.

    No storage, no clock lookups beyond the optional `now` argument, and no
    event dispatch; see TransitionOutcome.
    """

    def __init__(
        self,
        calculator: Optional[LoanCalculator] = None,
        approve_on_counter_offer_acceptance: Optional[bool] = None,
        counter_offer_min_amount: Optional[Decimal] = None,
        counter_offer_max_term_months: Optional[int] = None,
        draft_expiry_days: Optional[int] = None
    ):
        settings = get_config()
        self.calculator = calculator or LoanCalculator()
        self.approve_on_counter_offer_acceptance = (
            approve_on_counter_offer_acceptance if approve_on_counter_offer_acceptance is not None
            else settings.approve_on_counter_offer_acceptance
        )
        self.counter_offer_min_amount = Decimal(str(
            counter_offer_min_amount if counter_offer_min_amount is not None
            else settings.counter_offer_min_amount
        ))
        self.counter_offer_max_term_months = (
            counter_offer_max_term_months if counter_offer_max_term_months is not None
            else settings.counter_offer_max_term_months
        )
        self.draft_expiry_days = draft_expiry_days if draft_expiry_days is not None else settings.draft_expiry_days

    # ------------------------------------------------------------------
    # Creation and draft editing
    # ------------------------------------------------------------------

    def open_application(
        self,
        tenant_id: str,
        product: LoanProduct,
        applicant_id: str,
        amount: Decimal,
        term_months: int,
        payment_frequency: PaymentFrequency,
        purpose: Optional[str] = None,
        applicant_type: ApplicantType = ApplicantType.INDIVIDUAL,
        now: Optional[datetime] = None
    ) -> TransitionOutcome:
        """New DRAFT application priced with the product's rate and commission"""
        if applicant_type != ApplicantType.INDIVIDUAL:
            raise FieldValidationError("applicant_type", "Only individual applicants are supported")
        now = now or datetime.now(timezone.utc)
        frequency = PaymentFrequency.normalize(payment_frequency)
        amount = Decimal(str(amount))
        simulation = self.calculator.simulate(
            amount, term_months, frequency, product.annual_rate, product.opening_commission_rate
        )

        application = Application(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            tenant_id=tenant_id,
            product_id=product.id,
            applicant_id=applicant_id,
            requested_amount=amount,
            requested_term_months=term_months,
            interest_rate=product.annual_rate,
            payment_frequency=frequency,
            opening_commission_rate=product.opening_commission_rate,
            applicant_type=applicant_type,
            purpose=purpose,
            expires_at=now + timedelta(days=self.draft_expiry_days),
        )
        self._store_simulation(application, simulation)

        event = self._event(DomainEvent.APPLICATION_CREATED, application, {
            'applicant_id': applicant_id,
            'product_id': product.id,
            'requested_amount': amount,
            'requested_term_months': term_months,
            'payment_frequency': frequency.code,
        }, now)
        return TransitionOutcome(application=application, events=[event])

    def update_loan_terms(
        self,
        application: Application,
        amount: Optional[Decimal] = None,
        term_months: Optional[int] = None,
        payment_frequency: Optional[PaymentFrequency] = None,
        purpose: Optional[str] = None,
        product: Optional[LoanProduct] = None,
        now: Optional[datetime] = None
    ) -> TransitionOutcome:
        """Change requested terms of a draft and refresh its simulation figures"""
        if not application.is_editable:
            raise ApplicationNotEditableError(
                f"Loan terms can only change while the application is a draft "
                f"(current status '{application.status.code}')"
            )
        now = now or datetime.now(timezone.utc)
        updated = copy.deepcopy(application)
        if amount is not None:
            updated.requested_amount = Decimal(str(amount))
        if term_months is not None:
            updated.requested_term_months = term_months
        if payment_frequency is not None:
            updated.payment_frequency = PaymentFrequency.normalize(payment_frequency)
        if purpose is not None:
            updated.purpose = purpose
        if product is not None:
            product.validate_terms(updated.requested_amount, updated.requested_term_months,
                                   updated.payment_frequency)

        simulation = self.calculator.simulate(
            updated.requested_amount, updated.requested_term_months, updated.payment_frequency,
            updated.interest_rate, updated.opening_commission_rate
        )
        self._store_simulation(updated, simulation)
        updated.updated_at = now
        return TransitionOutcome(application=updated)

    # ------------------------------------------------------------------
    # Status changes
    # ------------------------------------------------------------------

    def change_status(
        self,
        application: Application,
        new_status: ApplicationStatus,
        actor_id: str,
        actor_type: ActorType,
        notes: Optional[str] = None,
        reason: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> TransitionOutcome:
        """
        Move the application to new_status

        Approval is routed through approve() so the approved terms are always fixed.

        Raises:
            InvalidTransitionError: The table does not allow the move
            MissingRequiredFieldError: Rejection without a reason
        """
        if new_status == ApplicationStatus.APPROVED:
            return self.approve(application, actor_id, notes=notes, actor_type=actor_type, now=now)
        return self._transition(application, new_status, actor_id, actor_type,
                                notes=notes, reason=reason, now=now)

    def submit(
        self,
        application: Application,
        account_id: str,
        snapshot_data: Dict[str, Any],
        ip: Optional[str] = None,
        device: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> TransitionOutcome:
        """DRAFT -> SUBMITTED by the applicant, freezing a copy of the applicant data"""
        def apply(updated: Application) -> None:
            updated.snapshot_data = to_storable(copy.deepcopy(snapshot_data))
            updated.submitted_by = account_id
            updated.submission_ip = ip
            updated.submission_device = device
            updated.expires_at = None

        return self._transition(application, ApplicationStatus.SUBMITTED, account_id, ActorType.APPLICANT,
                                now=now, apply=apply)

    def approve(
        self,
        application: Application,
        staff_id: str,
        amount: Optional[Decimal] = None,
        term_months: Optional[int] = None,
        interest_rate: Optional[Decimal] = None,
        payment_frequency: Optional[PaymentFrequency] = None,
        notes: Optional[str] = None,
        actor_type: ActorType = ActorType.STAFF,
        now: Optional[datetime] = None,
        product: Optional[LoanProduct] = None
    ) -> TransitionOutcome:
        """
        Approve with explicit terms, else the effective terms (accepted counter
        offer or requested). Terms that differ from the request are recalculated.
        When the product is given the approved terms must satisfy its rules.
        """
        self._ensure_allowed(application, ApplicationStatus.APPROVED)

        base = application.effective_terms()
        terms = LoanTerms(
            amount=Decimal(str(amount)) if amount is not None else base.amount,
            term_months=term_months if term_months is not None else base.term_months,
            interest_rate=Decimal(str(interest_rate)) if interest_rate is not None else base.interest_rate,
            payment_frequency=(
                PaymentFrequency.normalize(payment_frequency) if payment_frequency is not None
                else base.payment_frequency
            ),
        )
        if product is not None:
            product.validate_terms(terms.amount, terms.term_months, terms.payment_frequency)
        recalculated = terms != application.requested_terms or application.periodic_payment is None
        if recalculated:
            simulation = self.calculator.simulate(
                terms.amount, terms.term_months, terms.payment_frequency,
                terms.interest_rate, application.opening_commission_rate
            )
            periodic_payment, total_amount, cat = (
                simulation.periodic_payment, simulation.total_amount, simulation.cat
            )
        else:
            periodic_payment, total_amount, cat = (
                application.periodic_payment, application.total_amount, application.cat
            )

        def apply(updated: Application) -> None:
            updated.approved_amount = terms.amount
            updated.approved_term_months = terms.term_months
            updated.approved_interest_rate = terms.interest_rate
            updated.approved_payment_frequency = terms.payment_frequency
            updated.approved_periodic_payment = periodic_payment
            updated.approved_total_amount = total_amount
            updated.approved_cat = cat
            updated.decision_by = staff_id

        metadata = {
            'approved_amount': terms.amount,
            'approved_term_months': terms.term_months,
            'approved_interest_rate': terms.interest_rate,
            'approved_payment_frequency': terms.payment_frequency.code,
            'approved_periodic_payment': periodic_payment,
            'recalculated': recalculated,
        }
        return self._transition(application, ApplicationStatus.APPROVED, staff_id, actor_type,
                                notes=notes, now=now, apply=apply, metadata=metadata)

    def reject(
        self,
        application: Application,
        staff_id: str,
        reason: Optional[str],
        rejection_code: Optional[RejectionReason] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> TransitionOutcome:
        """Reject; the reason is mandatory"""
        def apply(updated: Application) -> None:
            updated.rejection_code = rejection_code
            updated.decision_by = staff_id

        metadata = {'rejection_code': rejection_code.code} if rejection_code else {}
        return self._transition(application, ApplicationStatus.REJECTED, staff_id, ActorType.STAFF,
                                notes=notes, reason=reason, now=now, apply=apply, metadata=metadata)

    def cancel(
        self,
        application: Application,
        cancelled_by: str,
        actor_type: ActorType = ActorType.STAFF,
        reason: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> TransitionOutcome:
        """Cancel from any status whose table row allows it; a second cancel fails"""
        return self._transition(application, ApplicationStatus.CANCELLED, cancelled_by, actor_type,
                                reason=reason, now=now)

    def mark_synced(
        self,
        application: Application,
        external_id: str,
        system: str,
        sync_data: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None
    ) -> TransitionOutcome:
        """APPROVED -> SYNCED once the external core system holds the loan"""
        if not external_id or not str(external_id).strip():
            raise MissingRequiredFieldError("external_id")

        def apply(updated: Application) -> None:
            updated.external_id = external_id
            updated.external_system = system
            updated.sync_data = to_storable(copy.deepcopy(sync_data or {}))

        return self._transition(application, ApplicationStatus.SYNCED, SYSTEM_ACTOR_ID, ActorType.SYSTEM,
                                notes=f"Synced to {system}", now=now, apply=apply,
                                metadata={'external_id': external_id, 'external_system': system})

    # ------------------------------------------------------------------
    # Counter offers
    # ------------------------------------------------------------------

    def send_counter_offer(
        self,
        application: Application,
        staff_id: str,
        amount: Decimal,
        term_months: int,
        interest_rate: Decimal,
        payment_frequency: Optional[PaymentFrequency] = None,
        reason: Optional[str] = None,
        product: Optional[LoanProduct] = None,
        now: Optional[datetime] = None
    ) -> TransitionOutcome:
        """
        Store alternate terms on an application under review

        The status does not change. A pending offer is replaced by the new one.

        Raises:
            InvalidTransitionError: Application is not in a review status
            FieldValidationError: Amount, term or rate out of bounds
        """
        if application.status not in REVIEW_STATUSES:
            raise InvalidTransitionError(
                application.status, ApplicationStatus.COUNTER_OFFERED,
                f"Counter offers can only be sent while the application is under review "
                f"(current status '{application.status.code}')"
            )

        amount = Decimal(str(amount))
        interest_rate = Decimal(str(interest_rate))
        frequency = PaymentFrequency.normalize(payment_frequency or application.payment_frequency)
        self._validate_counter_offer(amount, term_months, interest_rate, product)

        now = now or datetime.now(timezone.utc)
        simulation = self.calculator.simulate(
            amount, term_months, frequency, interest_rate, application.opening_commission_rate
        )

        updated = copy.deepcopy(application)
        updated.counter_offer = CounterOffer(
            amount=amount,
            term_months=term_months,
            interest_rate=interest_rate,
            payment_frequency=frequency,
            offered_by=staff_id,
            offered_at=now,
            periodic_payment=simulation.periodic_payment,
            total_amount=simulation.total_amount,
            cat=simulation.cat,
            reason=reason,
        )
        updated.updated_at = now

        event = self._event(DomainEvent.COUNTER_OFFER_SENT, updated, {
            'offered_by': staff_id,
            'amount': amount,
            'term_months': term_months,
            'interest_rate': interest_rate,
            'payment_frequency': frequency.code,
            'periodic_payment': simulation.periodic_payment,
            'reason': reason,
        }, now)
        return TransitionOutcome(application=updated, events=[event])

    def respond_to_counter_offer(
        self,
        application: Application,
        accepted: bool,
        account_id: str,
        now: Optional[datetime] = None
    ) -> TransitionOutcome:
        """
        Record the applicant's answer

        An accepted offer becomes the effective terms; with automatic approval
        enabled the application is approved right away. A rejected offer leaves
        the application for staff to reconsider.
        """
        if application.counter_offer is None:
            raise CounterOfferError("There is no counter offer to respond to")
        if not application.counter_offer.is_pending:
            raise CounterOfferError("The counter offer has already been answered")
        if application.is_terminal:
            raise CounterOfferError(
                f"Cannot answer a counter offer on an application in terminal status '{application.status.code}'"
            )

        now = now or datetime.now(timezone.utc)
        updated = copy.deepcopy(application)
        updated.counter_offer = replace(
            updated.counter_offer, accepted=accepted, responded_at=now, responded_by=account_id
        )
        updated.updated_at = now

        event_type = DomainEvent.COUNTER_OFFER_ACCEPTED if accepted else DomainEvent.COUNTER_OFFER_REJECTED
        event = self._event(event_type, updated, {
            'responded_by': account_id,
            'amount': updated.counter_offer.amount,
            'term_months': updated.counter_offer.term_months,
            'interest_rate': updated.counter_offer.interest_rate,
        }, now)
        outcome = TransitionOutcome(application=updated, events=[event])

        # outside review the acceptance is recorded and approval waits for staff
        if (accepted and self.approve_on_counter_offer_acceptance
                and validate_transition(updated.status, ApplicationStatus.APPROVED).allowed):
            approval = self.approve(updated, account_id, notes="Counter offer accepted",
                                    actor_type=ActorType.APPLICANT, now=now)
            approval.events.insert(0, event)
            return approval
        return outcome

    # ------------------------------------------------------------------
    # Staff-only fields
    # ------------------------------------------------------------------

    def assign(
        self,
        application: Application,
        staff_id: str,
        assigned_by: str,
        now: Optional[datetime] = None
    ) -> TransitionOutcome:
        """Assign an analyst; no status change"""
        if application.is_terminal:
            raise ApplicationNotEditableError(
                f"Cannot assign an application in terminal status '{application.status.code}'"
            )
        now = now or datetime.now(timezone.utc)
        updated = copy.deepcopy(application)
        updated.assigned_to = staff_id
        updated.assigned_by = assigned_by
        updated.assigned_at = now
        updated.updated_at = now
        event = self._event(DomainEvent.ANALYST_ASSIGNED, updated, {
            'assigned_to': staff_id,
            'assigned_by': assigned_by,
            'previous_assignee': application.assigned_to,
        }, now)
        return TransitionOutcome(application=updated, events=[event])

    def set_risk_assessment(
        self,
        application: Application,
        level: RiskLevel,
        data: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None
    ) -> TransitionOutcome:
        now = now or datetime.now(timezone.utc)
        updated = copy.deepcopy(application)
        updated.risk_level = level if isinstance(level, RiskLevel) else RiskLevel(str(level).upper())
        updated.risk_data = to_storable(copy.deepcopy(data or {}))
        updated.updated_at = now
        return TransitionOutcome(application=updated)

    def allowed_next_statuses(self, application: Application, include_internal: bool = True) -> List[ApplicationStatus]:
        return allowed_transitions(application.status, include_internal)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ensure_allowed(self, application: Application, target: ApplicationStatus) -> None:
        check = validate_transition(application.status, target)
        if not check.allowed:
            raise InvalidTransitionError(check.current_status, check.attempted_status, check.reason)

    def _transition(
        self,
        application: Application,
        target: ApplicationStatus,
        actor_id: str,
        actor_type: ActorType,
        notes: Optional[str] = None,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
        apply=None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> TransitionOutcome:
        self._ensure_allowed(application, target)
        if target == ApplicationStatus.REJECTED and (reason is None or not reason.strip()):
            raise MissingRequiredFieldError("reason", "A reason is required to reject an application")

        now = now or datetime.now(timezone.utc)
        previous = application.status
        updated = copy.deepcopy(application)
        updated.status = target
        updated.updated_at = now
        updated.status_changed_at = now
        updated.status_changed_by = actor_id
        updated.status_changed_by_type = actor_type

        if target == ApplicationStatus.SUBMITTED:
            updated.submitted_at = now
        elif target in (ApplicationStatus.APPROVED, ApplicationStatus.REJECTED):
            updated.decision_at = now
        elif target == ApplicationStatus.DISBURSED:
            updated.disbursed_at = now
        elif target == ApplicationStatus.CANCELLED:
            updated.cancelled_at = now
        elif target == ApplicationStatus.SYNCED:
            updated.synced_at = now

        if target == ApplicationStatus.REJECTED:
            updated.rejection_reason = reason.strip()
        elif target == ApplicationStatus.CANCELLED:
            updated.cancellation_reason = reason

        if apply is not None:
            apply(updated)

        history_entry = StatusHistoryEntry(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            application_id=application.id,
            from_status=previous,
            to_status=target,
            changed_by=actor_id,
            changed_by_type=actor_type,
            notes=notes,
            reason=reason,
            metadata=to_storable(metadata or {}),
        )

        data = {
            'from_status': previous.code,
            'to_status': target.code,
            'changed_by': actor_id,
            'changed_by_type': actor_type.value,
            'reason': reason,
            'notes': notes,
            'history_entry_id': history_entry.id,
            **(metadata or {}),
        }
        events = [self._event(DomainEvent.STATUS_CHANGED, updated, data, now)]
        if target in STATUS_EVENTS:
            events.append(self._event(STATUS_EVENTS[target], updated, data, now))
        return TransitionOutcome(application=updated, history_entry=history_entry, events=events)

    def _validate_counter_offer(
        self,
        amount: Decimal,
        term_months: int,
        interest_rate: Decimal,
        product: Optional[LoanProduct]
    ) -> None:
        min_amount = product.min_amount if product else self.counter_offer_min_amount
        min_term = product.min_term_months if product else 1
        max_term = product.max_term_months if product else self.counter_offer_max_term_months

        if amount < min_amount:
            raise FieldValidationError("amount", f"Counter offer amount must be at least {min_amount}")
        if not min_term <= term_months <= max_term:
            raise FieldValidationError(
                "term_months", f"Counter offer term must be between {min_term} and {max_term} months"
            )
        if not Decimal(0) <= interest_rate <= Decimal(100):
            raise FieldValidationError("interest_rate", "Counter offer rate must be between 0 and 100")

    def _store_simulation(self, application: Application, simulation: LoanSimulation) -> None:
        application.periodic_payment = simulation.periodic_payment
        application.total_amount = simulation.total_amount
        application.total_interest = simulation.total_interest
        application.opening_commission = simulation.opening_commission
        application.cat = simulation.cat

    def _event(
        self,
        event_type: DomainEvent,
        application: Application,
        data: Dict[str, Any],
        now: datetime
    ) -> EventPayload:
        return EventPayload(
            event_type=event_type,
            entity_type="application",
            entity_id=application.id,
            data=to_storable({'tenant_id': application.tenant_id, **data}),
            timestamp=now,
        )
