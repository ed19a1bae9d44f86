from __future__ import annotations


class GatewayError(RuntimeError):
    status_code = 500


class ConfigurationError(GatewayError):
    """Raised when the service-account credential is missing or invalid."""


class CredentialError(ConfigurationError):
    """Raised when the credential's private key cannot sign an assertion."""


class TokenAcquisitionError(GatewayError):
    def __init__(self, message: str, *, status: int | None = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body


class ValidationError(GatewayError):
    status_code = 400


class WrongEndpointError(ValidationError):
    def __init__(self, message: str, *, model: str, correct_endpoint: str):
        super().__init__(message)
        self.model = model
        self.correct_endpoint = correct_endpoint


class UpstreamAPIError(GatewayError):
    def __init__(self, *, status: int, body: str, model: str, label: str = "Gemini"):
        super().__init__(f"{label} API error: {status} {body}")
        self.status = status
        self.body = body
        self.model = model

    @property
    def allows_model_fallback(self) -> bool:
        return self.status in {400, 404}


class NoImageDataError(GatewayError):
    """Raised when a successful upstream response carries no image bytes."""


class NotFoundError(GatewayError):
    status_code = 404
