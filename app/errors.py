from typing import Any, Optional


class ExternalServiceError(Exception):
    """An outbound call failed in a way that carries no business meaning."""

    def __init__(
        self,
        message: str,
        status_code: int,
        error_code: str,
        response_body: Optional[Any] = None,
    ):
        self.status_code = status_code
        self.error_code = error_code  # http, timeout, network
        self.response_body = response_body
        super().__init__(message)


class SignerConfigurationError(Exception):
    pass


class InvalidChatPayloadError(Exception):
    pass
