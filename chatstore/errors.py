"""Exception hierarchy for the conversation store.

Failures are scoped by how far they reach:

- ``InitializationFailure`` poisons every pending operation until a retry.
- ``ProtectionFailure`` concerns the wrapped content key only.
- ``EncryptionFailure`` / ``DecryptionFailure`` concern a single message.
- ``StorageIOFailure`` is any engine or disk error on a statement.
"""


class ChatStoreError(Exception):
    """Base exception for persistence errors."""

    pass


class InitializationFailure(ChatStoreError):
    """Connection open or schema creation failed."""

    pass


class ProtectionFailure(ChatStoreError):
    """The secret protector could not wrap or unwrap key material."""

    pass


class EncryptionFailure(ChatStoreError):
    """Message content could not be encrypted; nothing was written."""

    pass


class DecryptionFailure(ChatStoreError):
    """A stored envelope could not be decrypted with the current key."""

    def __init__(self, message: str, *, message_id: int | None = None):
        super().__init__(message)
        self.message_id = message_id


class StorageIOFailure(ChatStoreError):
    """A statement failed at the engine or filesystem level."""

    pass
