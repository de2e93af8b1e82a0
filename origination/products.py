"""
Loan Product Module

Loan product definitions (amount and term bounds, pricing, allowed payment
frequencies) and the catalog used to look them up when simulating or applying.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
import uuid

from .calculator import PaymentFrequency
from .config import get_config
from .exceptions import NotFoundError, ProductRuleError
from .storage import StorageInterface, StorageRecord, parse_decimal
from .audit import AuditTrail, AuditEventType


class LoanProductType(Enum):
    """Credit product families"""
    PERSONAL = "personal"
    PAYROLL = "payroll"        # Payroll-deducted loans
    SME = "sme"
    LEASING = "leasing"
    FACTORING = "factoring"


class ProductStatus(Enum):
    """Product lifecycle status"""
    DRAFT = "draft"         # Being configured, not offered
    ACTIVE = "active"       # Available for simulations and applications
    SUSPENDED = "suspended" # Temporarily unavailable
    RETIRED = "retired"     # Permanently unavailable


@dataclass
class LoanProduct(StorageRecord):
    """Loan product rules"""
    name: str
    product_type: LoanProductType
    min_amount: Decimal
    max_amount: Decimal
    min_term_months: int
    max_term_months: int
    annual_rate: Decimal                # percent, e.g. 45 for 45%
    opening_commission_rate: Decimal    # percent of the amount
    payment_frequencies: List[PaymentFrequency] = field(
        default_factory=lambda: [PaymentFrequency.WEEKLY, PaymentFrequency.BIWEEKLY, PaymentFrequency.MONTHLY]
    )
    required_documents: List[str] = field(default_factory=list)
    status: ProductStatus = ProductStatus.DRAFT
    description: str = ""

    def __post_init__(self):
        if self.min_amount <= 0 or self.max_amount < self.min_amount:
            raise ValueError("Amount bounds must be positive with min_amount <= max_amount")
        if self.min_term_months <= 0 or self.max_term_months < self.min_term_months:
            raise ValueError("Term bounds must be positive with min_term_months <= max_term_months")
        if self.annual_rate < 0 or self.annual_rate > 100:
            raise ValueError("Annual rate must be between 0 and 100")
        if self.opening_commission_rate < 0 or self.opening_commission_rate >= 100:
            raise ValueError("Opening commission rate must be between 0 and 100")
        if not self.payment_frequencies:
            raise ValueError("A product needs at least one payment frequency")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanProduct':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['product_type'] = LoanProductType(data['product_type'])
        data['status'] = ProductStatus(data['status'])
        for key in ('min_amount', 'max_amount', 'annual_rate', 'opening_commission_rate'):
            data[key] = parse_decimal(data[key])
        data['payment_frequencies'] = [PaymentFrequency.normalize(f) for f in data['payment_frequencies']]
        return cls(**data)

    @property
    def is_available(self) -> bool:
        return self.status == ProductStatus.ACTIVE

    def is_amount_valid(self, amount: Decimal) -> bool:
        return self.min_amount <= amount <= self.max_amount

    def is_term_valid(self, term_months: int) -> bool:
        return self.min_term_months <= term_months <= self.max_term_months

    def supports_frequency(self, frequency: PaymentFrequency) -> bool:
        return PaymentFrequency.normalize(frequency) in self.payment_frequencies

    def ensure_available(self) -> None:
        if not self.is_available:
            raise ProductRuleError(
                "PRODUCT_UNAVAILABLE",
                f"Product {self.name} is {self.status.value} and cannot be offered",
                {"product_id": self.id, "status": self.status.value}
            )

    def validate_terms(self, amount: Decimal, term_months: int, frequency: PaymentFrequency) -> None:
        """
        Check requested terms against the product rules

        Raises:
            ProductRuleError: INVALID_AMOUNT, INVALID_TERM or INVALID_FREQUENCY
        """
        if not self.is_amount_valid(amount):
            raise ProductRuleError(
                "INVALID_AMOUNT",
                f"Amount must be between {self.min_amount} and {self.max_amount}",
                {"min_amount": str(self.min_amount), "max_amount": str(self.max_amount), "amount": str(amount)}
            )
        if not self.is_term_valid(term_months):
            raise ProductRuleError(
                "INVALID_TERM",
                f"Term must be between {self.min_term_months} and {self.max_term_months} months",
                {"min_term_months": self.min_term_months, "max_term_months": self.max_term_months,
                 "term_months": term_months}
            )
        if not self.supports_frequency(frequency):
            raise ProductRuleError(
                "INVALID_FREQUENCY",
                f"Payment frequency {PaymentFrequency.normalize(frequency).code} is not offered",
                {"allowed": [f.code for f in self.payment_frequencies]}
            )


class ProductCatalog:
    """Creates, looks up and retires loan products"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "loan_products"

    def create_product(
        self,
        name: str,
        product_type: LoanProductType = LoanProductType.PERSONAL,
        min_amount: Optional[Decimal] = None,
        max_amount: Optional[Decimal] = None,
        min_term_months: Optional[int] = None,
        max_term_months: Optional[int] = None,
        annual_rate: Optional[Decimal] = None,
        opening_commission_rate: Optional[Decimal] = None,
        status: ProductStatus = ProductStatus.ACTIVE,
        created_by: Optional[str] = None,
        **kwargs
    ) -> LoanProduct:
        """Create a product; unset rules fall back to the configured defaults"""
        settings = get_config()
        now = datetime.now(timezone.utc)
        product = LoanProduct(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name,
            product_type=product_type,
            min_amount=Decimal(str(min_amount if min_amount is not None else settings.default_min_amount)),
            max_amount=Decimal(str(max_amount if max_amount is not None else settings.default_max_amount)),
            min_term_months=min_term_months if min_term_months is not None else settings.default_min_term_months,
            max_term_months=max_term_months if max_term_months is not None else settings.default_max_term_months,
            annual_rate=Decimal(str(annual_rate if annual_rate is not None else settings.default_annual_rate)),
            opening_commission_rate=Decimal(str(
                opening_commission_rate if opening_commission_rate is not None
                else settings.default_opening_commission_rate
            )),
            status=status,
            **kwargs
        )

        self.storage.save(self.table_name, product.id, product.to_dict())

        self.audit_trail.log_event(
            event_type=AuditEventType.PRODUCT_CREATED,
            entity_type="product",
            entity_id=product.id,
            metadata={
                "name": name,
                "product_type": product_type.value,
                "status": status.value
            },
            user_id=created_by
        )

        return product

    def get_product(self, product_id: str) -> LoanProduct:
        """Get product by ID, raising NotFoundError when unknown"""
        data = self.storage.load(self.table_name, product_id)
        if data is None:
            raise NotFoundError("product", product_id)
        return LoanProduct.from_dict(data)

    def list_products(
        self,
        product_type: Optional[LoanProductType] = None,
        status: Optional[ProductStatus] = None
    ) -> List[LoanProduct]:
        """List products with optional filters"""
        filters = {}
        if product_type:
            filters["product_type"] = product_type.value
        if status:
            filters["status"] = status.value
        return [LoanProduct.from_dict(data) for data in self.storage.find(self.table_name, filters)]

    def get_available_product(self, product_id: str) -> LoanProduct:
        """Product that can be simulated or applied for right now"""
        product = self.get_product(product_id)
        product.ensure_available()
        return product

    def activate_product(self, product_id: str, changed_by: Optional[str] = None) -> LoanProduct:
        return self._change_status(product_id, ProductStatus.ACTIVE, changed_by)

    def suspend_product(self, product_id: str, changed_by: Optional[str] = None) -> LoanProduct:
        return self._change_status(product_id, ProductStatus.SUSPENDED, changed_by)

    def retire_product(self, product_id: str, changed_by: Optional[str] = None) -> LoanProduct:
        return self._change_status(product_id, ProductStatus.RETIRED, changed_by)

    def _change_status(self, product_id: str, status: ProductStatus, changed_by: Optional[str]) -> LoanProduct:
        product = self.get_product(product_id)
        if product.status == ProductStatus.RETIRED:
            raise ProductRuleError("PRODUCT_UNAVAILABLE", f"Product {product_id} is retired")

        previous = product.status
        product.status = status
        product.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, product.id, product.to_dict())

        self.audit_trail.log_event(
            event_type=AuditEventType.PRODUCT_STATUS_CHANGED,
            entity_type="product",
            entity_id=product.id,
            metadata={"old_status": previous.value, "new_status": status.value},
            user_id=changed_by
        )
        return product
