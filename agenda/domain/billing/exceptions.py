"""Billing domain exceptions"""


class BillingError(Exception):
    """Base class for billing errors; ``reason`` is the machine-readable code"""

    reason = "billing_error"

    def __init__(self, message: str = "", reason: str = None):
        super().__init__(message or reason or self.reason)
        if reason:
            self.reason = reason


class SignatureInvalid(BillingError):
    """Webhook signature missing or mismatched - never surfaced to the gateway"""

    reason = "invalid_signature"


class AlreadyProcessed(BillingError):
    """Gateway event was already applied (idempotent no-op)"""

    reason = "already_processed"


class SubscriptionUnresolvable(BillingError):
    """No local subscription matches the gateway resource and none can be rebuilt"""

    reason = "subscription_unresolvable"


class InsufficientBalance(BillingError):
    reason = "insufficient_balance"


class PerAppointmentLimitExceeded(BillingError):
    reason = "per_appointment_limit"


class PackageInvalid(BillingError):
    """Unknown top-up package"""

    reason = "invalid_package"


class GatewayError(BillingError):
    """Mercado Pago request failed or returned an unusable response"""

    reason = "gateway_error"

    def __init__(self, message: str = "", status_code: int = None, reason: str = None):
        super().__init__(message, reason=reason)
        self.status_code = status_code


class TenantNotFound(BillingError):
    reason = "tenant_not_found"


class PlanAlreadyActive(BillingError):
    """Checkout requested for the plan the tenant is already paying for"""

    reason = "already_active"


class PlanUnchanged(BillingError):
    """Plan change requested to the tenant's current plan"""

    reason = "same_plan"


class RecurringNotConfigured(BillingError):
    """No preapproval exists to pause, resume or cancel"""

    reason = "no_recurring"
