class StoreUnavailableError(Exception):
    """
    Raised when the player record store cannot be reached.

    Callers must never interpret this as "record not found".
    """

    @staticmethod
    def not_connected() -> "StoreUnavailableError":
        """The connectivity check failed before the operation started."""
        return StoreUnavailableError("error-gatekeeper-1000 Player store not connected")

    @staticmethod
    def operation_failed(operation: str) -> "StoreUnavailableError":
        """The backend failed while running an operation."""
        return StoreUnavailableError(
            f"error-gatekeeper-1001 Player store failed during {operation}"
        )


class InvalidPlayerRecord(Exception):
    """
    Raised when a record violates the storage rules and cannot be saved.
    """

    @staticmethod
    def missing_credentials(lowercase_nickname: str) -> "InvalidPlayerRecord":
        """Neither a credential hash nor a remote identity id is present."""
        return InvalidPlayerRecord(
            f"error-gatekeeper-2000 Record {lowercase_nickname} has no credential hash "
            "and no remote identity id"
        )

    @staticmethod
    def key_mismatch(lowercase_nickname: str) -> "InvalidPlayerRecord":
        """The stored key does not match the lowercase form of the nickname."""
        return InvalidPlayerRecord(
            f"error-gatekeeper-2001 Record key {lowercase_nickname} does not match its nickname"
        )
