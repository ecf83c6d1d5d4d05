from typing import Dict, Optional


class FerrowError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(FerrowError):
    status_code = 400

    def __init__(self, message: str,
                 fields: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.fields = fields or {}


class NotFoundError(FerrowError):
    status_code = 404


class ConflictError(FerrowError):
    status_code = 409


class ConfigurationError(FerrowError):
    status_code = 500


class UpstreamError(FerrowError):
    status_code = 502


class PaymentGatewayError(UpstreamError):
    pass


class ShippingError(UpstreamError):
    pass


class AuthError(FerrowError):
    status_code = 401

    def __init__(self, message: str, status_code: int = 401):
        super().__init__(message)
        self.status_code = status_code
