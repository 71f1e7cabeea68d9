"""Error taxonomy for the generation/apply pipeline.

Every error carries a human-readable message and states whether usage
credits were charged, so terminal failures can be reported as-is.
"""

from typing import Any


class AppBuilderError(Exception):
    """Base exception for all pipeline errors."""

    credits_charged: bool = False

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message

    def user_message(self) -> str:
        charged = (
            "Credits were charged for this generation."
            if self.credits_charged
            else "No credits were charged."
        )
        return f"{self.message} {charged}"


class TransportError(AppBuilderError):
    """The model stream or a network call failed before completion."""


class ProvisionError(AppBuilderError):
    """All sandbox provisioning attempts were exhausted."""

    def __init__(
        self,
        message: str,
        attempts: int,
        suggestions: list[str] | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.attempts = attempts
        self.suggestions = suggestions or []

    def user_message(self) -> str:
        base = super().user_message()
        if not self.suggestions:
            return base
        hints = "; ".join(self.suggestions)
        return f"{base} Try: {hints}"


class ExtractionAnomaly(AppBuilderError):
    """A malformed tag sequence in the model output.

    Recorded and logged, never raised by the extractor.
    """

    def __init__(self, message: str, offset: int, details: dict[str, Any] | None = None):
        super().__init__(message, details)
        self.offset = offset


class PackageInstallError(AppBuilderError):
    """A single package failed to install. Non-fatal for the apply."""

    def __init__(self, package: str, message: str):
        super().__init__(message, {"package": package})
        self.package = package


class ApplicationError(AppBuilderError):
    """File write or build check failed. Already-written files stay on the sandbox."""

    def user_message(self) -> str:
        return (
            f"{super().user_message()} Some files may already have been applied "
            "to the sandbox, so the preview can show a partial state."
        )


class CreditError(AppBuilderError):
    """Balance is below the pre-flight estimate. Raised only before a generation starts."""

    def __init__(self, balance: int, required: int):
        super().__init__(
            f"Insufficient credits: {required} required, {balance} available. "
            "Top up your balance to continue.",
            {"balance": balance, "required": required},
        )
        self.balance = balance
        self.required = required


class InvalidTransition(AppBuilderError):
    """A generation session was driven through an illegal state change."""


class SessionBusyError(AppBuilderError):
    """A prompt was submitted while another session is streaming or applying."""


class MirrorError(AppBuilderError):
    """The source-control mirror rejected a request."""
