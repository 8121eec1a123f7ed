"""
Payment Services - Payment processing and gateway integrations.

Provides:
- Payment creation through pluggable providers (Cashfree, mock, cash)
- Reconciliation of gateway results against payments and bills
- Cashfree webhook verification and deduplication
- Circuit breaker for gateway API resilience
"""

from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerError,
    CircuitState,
    cashfree_breaker,
)
from .providers import (
    GatewayPayment,
    GatewayResult,
    PaymentProvider,
    CashProvider,
    MockProvider,
    CashfreeProvider,
    ProviderRegistry,
    get_provider_registry,
)
from .reconciler import PaymentReconciler, VerifyResult
from .payment_service import PaymentService
from .cashfree_webhook import CashfreeWebhookHandler, compute_signature, verify_signature

__all__ = [
    # Circuit breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerError",
    "CircuitState",
    "cashfree_breaker",
    # Providers
    "GatewayPayment",
    "GatewayResult",
    "PaymentProvider",
    "CashProvider",
    "MockProvider",
    "CashfreeProvider",
    "ProviderRegistry",
    "get_provider_registry",
    # Reconciliation
    "PaymentReconciler",
    "VerifyResult",
    "PaymentService",
    # Webhooks
    "CashfreeWebhookHandler",
    "compute_signature",
    "verify_signature",
]
