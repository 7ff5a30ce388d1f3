from app.integrations.errors import (
    IntegrationBadGatewayError,
    IntegrationError,
    IntegrationNotFoundError,
    IntegrationSignatureError,
    IntegrationTimeoutError,
    IntegrationUnavailableError,
)

__all__ = [
    "IntegrationError",
    "IntegrationTimeoutError",
    "IntegrationUnavailableError",
    "IntegrationBadGatewayError",
    "IntegrationNotFoundError",
    "IntegrationSignatureError",
]
