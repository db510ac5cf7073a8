# oracle_cards/remote_api/exceptions.py
#
#
#######################################################################################################################
#
# Functions:

class RemoteGatewayError(Exception):
    """Base exception for remote gateway errors."""
    pass

class TransportError(RemoteGatewayError):
    """Raised for network, timeout or server-side (5xx) failures. Safe to retry later."""
    pass

class RejectedError(RemoteGatewayError):
    """Raised when the backend refuses an operation (ownership, validation, bad request). Not blindly retryable."""
    def __init__(self, message: str, status_code: int = None, response_data: dict = None):
        super().__init__(f"Rejected ({status_code}): {message}" if status_code else f"Rejected: {message}")
        self.status_code = status_code
        self.response_data = response_data or {}

class AuthenticationError(RejectedError):
    """Raised when the session token is missing, expired or invalid."""
    pass

class WireFormatError(RemoteGatewayError, ValueError):
    """Raised when a remote row cannot be parsed into a local entity."""
    pass

#
# End of oracle_cards/remote_api/exceptions.py
########################################################################################################################
