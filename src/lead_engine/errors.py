from __future__ import annotations


class LeadEngineError(Exception):
    """Base class for every error the engine surfaces to callers."""


class NotFound(LeadEngineError):
    pass


class Expired(LeadEngineError):
    pass


class AlreadyClaimed(LeadEngineError):
    pass


class InsufficientCredits(LeadEngineError):
    def __init__(self, business_id, message: str = "Not enough lead credits to reveal this lead"):
        super().__init__(message)
        self.business_id = business_id


class DuplicateConstraint(LeadEngineError):
    """An insert-if-absent hit an existing row. Callers treat this as a no-op."""


class CampaignExists(DuplicateConstraint):
    def __init__(self, business_id):
        super().__init__(f"Business {business_id} already has an open claim campaign")
        self.business_id = business_id


class ValidationError(LeadEngineError):
    pass


class ConfigurationError(LeadEngineError):
    """Fatal misconfiguration (e.g. token entropy exhausted). Never retried."""


class Forbidden(LeadEngineError):
    pass
