from __future__ import annotations


class LeadOpsError(Exception):
    """Base class for domain failures raised by the lead ops services."""


class InvalidContactError(LeadOpsError):
    """Raised when the contact data cannot identify a lead (e.g. empty phone after normalization)."""

    def __init__(self, raw_phone: str | None) -> None:
        self.raw_phone = raw_phone
        super().__init__(f"Invalid contact phone: {raw_phone!r}")


class StorageFailure(LeadOpsError):
    """Raised when the relational store rejects an operation for reasons other than a known uniqueness rule."""


class ExternalSyncFailure(LeadOpsError):
    """Raised by connectors when an external system call fails after retries."""

    def __init__(self, system: str, operation: str, detail: str) -> None:
        self.system = system
        self.operation = operation
        self.detail = detail
        super().__init__(f"{system}.{operation} failed: {detail}")


class TemplateRenderFailure(LeadOpsError):
    def __init__(self, template_name: str, detail: str) -> None:
        self.template_name = template_name
        self.detail = detail
        super().__init__(f"Template '{template_name}' failed to render: {detail}")


class UnknownCommitmentType(LeadOpsError):
    def __init__(self, commitment_type: str) -> None:
        self.commitment_type = commitment_type
        super().__init__(f"Unknown commitment type: {commitment_type!r}")
