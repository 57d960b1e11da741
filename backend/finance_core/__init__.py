"""
Financial Calculation & Guarded Workflow Engine
"""
from .errors import (
    FinanceEngineError,
    ValidationError,
    CurrencyMismatch,
    CalculationError,
    NotFoundError,
    LockedResource,
    InvalidTransition,
    IdempotencyConflict,
    AlreadyVoided,
    StorageError
)

from .financial_precision import (
    Money,
    to_decimal,
    round_financial,
    apply_percentage_discount,
    apply_fixed_discount,
    compute_tax,
    extract_inclusive_tax
)

from .domain import (
    Caller,
    Discount,
    DiscountType,
    LineItem,
    Quote,
    QuoteStatus,
    QuoteVersion,
    Invoice,
    InvoiceStatus,
    Payment,
    PaymentStatus
)

from .totals_calculator import (
    CalculationDraft,
    TotalsResult,
    calculate_totals
)

from .idempotency import (
    IdempotencyGuard,
    MongoIdempotencyStore
)

from .persistence import (
    FinancePersistence,
    MongoFinancePersistence
)

from .quote_workflow import (
    QuoteWorkflowService,
    QuoteInput,
    LineInput
)

from .payment_service import (
    PaymentApplicationService
)

__all__ = [
    # Errors
    'FinanceEngineError',
    'ValidationError',
    'CurrencyMismatch',
    'CalculationError',
    'NotFoundError',
    'LockedResource',
    'InvalidTransition',
    'IdempotencyConflict',
    'AlreadyVoided',
    'StorageError',
    # Money Engine
    'Money',
    'to_decimal',
    'round_financial',
    'apply_percentage_discount',
    'apply_fixed_discount',
    'compute_tax',
    'extract_inclusive_tax',
    # Domain
    'Caller',
    'Discount',
    'DiscountType',
    'LineItem',
    'Quote',
    'QuoteStatus',
    'QuoteVersion',
    'Invoice',
    'InvoiceStatus',
    'Payment',
    'PaymentStatus',
    # Calculator
    'CalculationDraft',
    'TotalsResult',
    'calculate_totals',
    # Idempotency
    'IdempotencyGuard',
    'MongoIdempotencyStore',
    # Persistence
    'FinancePersistence',
    'MongoFinancePersistence',
    # Services
    'QuoteWorkflowService',
    'QuoteInput',
    'LineInput',
    'PaymentApplicationService',
]
