from __future__ import annotations


class PairchatError(Exception):
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(PairchatError):
    """Malformed input. Surfaced to the caller, never fatal."""


class DuplicateUserError(PairchatError):
    pass


class AuthError(PairchatError):
    """Bad credentials. The message never says which part was wrong."""


class StorageError(PairchatError):
    pass


class BlobDeletionError(PairchatError):
    pass
