from fastapi import HTTPException, status


class BillingError(HTTPException):
    """Base class for subscription and billing failures.

    Carries an HTTP status so routers can let it propagate unchanged, plus a
    stable machine-readable ``code`` for the response body.
    """

    code = "billing_error"

    def __init__(self, message: str, status_code: int = status.HTTP_400_BAD_REQUEST):
        super().__init__(status_code=status_code, detail=message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class NotFoundError(BillingError):
    """Raised when a requested resource is not found."""

    code = "not_found"

    def __init__(self, resource: str):
        super().__init__(f"{resource} not found", status.HTTP_404_NOT_FOUND)


class PlanNotFoundError(NotFoundError):
    code = "plan_not_found"

    def __init__(self, plan_id: str):
        super().__init__(f"Plan '{plan_id}'")
        self.plan_id = plan_id


class SubscriptionNotFoundError(NotFoundError):
    code = "subscription_not_found"

    def __init__(self, reference: object):
        super().__init__(f"Subscription {reference}")


class UnknownProviderError(NotFoundError):
    code = "unknown_provider"

    def __init__(self, provider: str):
        super().__init__(f"Payment provider '{provider}'")


class SignatureError(BillingError):
    """Webhook or payment signature did not verify. Never mutates state."""

    code = "invalid_signature"

    def __init__(self, message: str = "Invalid signature"):
        super().__init__(message, status.HTTP_400_BAD_REQUEST)


class ConflictError(BillingError):
    """A live (trialing/active) subscription already exists for the user."""

    code = "conflict"

    def __init__(self, message: str):
        super().__init__(message, status.HTTP_409_CONFLICT)


class InvalidStateTransition(BillingError):
    """Requested operation is not legal from the subscription's current state."""

    code = "invalid_state_transition"

    def __init__(self, operation: str, current_state: str, detail: str | None = None):
        message = f"Cannot {operation} a subscription in state '{current_state}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, status.HTTP_409_CONFLICT)
        self.operation = operation
        self.current_state = current_state


class PlanNotEligibleError(BillingError):
    code = "plan_not_eligible"

    def __init__(self, message: str):
        super().__init__(message, status.HTTP_400_BAD_REQUEST)


class PaymentNotCapturedError(BillingError):
    code = "payment_not_captured"

    def __init__(self, payment_id: str, payment_status: str):
        super().__init__(
            f"Payment {payment_id} is '{payment_status}', expected 'captured'",
            status.HTTP_400_BAD_REQUEST,
        )
        self.payment_id = payment_id
        self.payment_status = payment_status


class PaymentMismatchError(BillingError):
    """Captured payment does not pay for the requested plan."""

    code = "payment_mismatch"

    def __init__(self, payment_id: str, detail: str):
        super().__init__(
            f"Payment {payment_id} does not match the plan: {detail}",
            status.HTTP_400_BAD_REQUEST,
        )
        self.payment_id = payment_id


class ProviderError(BillingError):
    """Payment provider call failed or timed out. Retryable; never advances state."""

    code = "provider_error"

    def __init__(self, provider: str, message: str, provider_code: str | None = None):
        super().__init__(f"{provider}: {message}", status.HTTP_502_BAD_GATEWAY)
        self.provider = provider
        self.provider_code = provider_code


class LockTimeoutError(BillingError):
    """Per-subscription lock could not be acquired in time. Retryable."""

    code = "lock_timeout"

    def __init__(self, key: str):
        super().__init__(
            f"Timed out waiting for lock on {key}",
            status.HTTP_503_SERVICE_UNAVAILABLE,
        )
        self.key = key


class PersistenceError(BillingError):
    """Storage layer failure while applying a transition."""

    code = "persistence_error"

    def __init__(self, message: str = "Storage failure"):
        super().__init__(message, status.HTTP_500_INTERNAL_SERVER_ERROR)


class DispatchTimeoutError(BillingError):
    """Webhook handling exceeded its time limit. Retryable."""

    code = "dispatch_timeout"

    def __init__(self, provider: str, event_id: str):
        super().__init__(
            f"Timed out handling {provider} event {event_id}",
            status.HTTP_503_SERVICE_UNAVAILABLE,
        )
        self.provider = provider
        self.event_id = event_id
