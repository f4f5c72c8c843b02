class DripEngineError(Exception):
    """Base class for drip engine errors."""


class CampaignNotFoundError(DripEngineError):
    pass


class InvalidCampaignError(DripEngineError):
    """Campaign cannot serve the request: inactive on trigger, or shorter than the journey."""


class JourneyNotFoundError(DripEngineError):
    pass


class WebhookVerificationError(DripEngineError):
    """Inbound webhook could not be authenticated."""


class WebhookPayloadError(DripEngineError):
    """Inbound webhook body could not be parsed into provider events."""
