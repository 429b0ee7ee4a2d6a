"""Errors raised while talking to the warehouse and mapping its responses."""


class RemoteDirectoryError(Exception):
    """Base class for failures of the remote schema/query directory"""
    pass


class RemoteUnavailable(RemoteDirectoryError):
    """Raised when the warehouse API or CLI cannot be reached, fails, or times out"""
    pass


class MalformedResponse(RemoteDirectoryError):
    """Raised when a response does not have the expected shape"""
    pass


class DryRunValidationError(Exception):
    """Raised when the warehouse rejects a dry-run query"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class LocationUnresolvable(Exception):
    """Raised when an error message cannot be mapped to a document range"""
    pass
