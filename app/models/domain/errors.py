"""
Exception taxonomy for check-in, custody and disclosure operations.

Routes translate these into HTTP responses; the trigger scan records them
per item and keeps going.
"""


class DeadManSwitchError(Exception):
    """Base class for domain errors."""

    def __init__(self, message: str, secret_id: str | None = None):
        super().__init__(message)
        self.secret_id = secret_id


# Check-in (user-correctable, 400-class)


class CheckInError(DeadManSwitchError):
    """Token redemption failed for a reason the user can act on."""


class TokenNotFound(CheckInError):
    def __init__(self):
        super().__init__("Invalid or expired token")


class TokenAlreadyUsed(CheckInError):
    def __init__(self, secret_id: str | None = None):
        super().__init__("Token has already been used", secret_id=secret_id)


class TokenExpired(CheckInError):
    def __init__(self, secret_id: str | None = None):
        super().__init__("Token has expired", secret_id=secret_id)


class SecretNotFound(DeadManSwitchError):
    def __init__(self, secret_id: str | None = None):
        super().__init__("Secret not found", secret_id=secret_id)


class SecretStateError(DeadManSwitchError):
    """Operation not allowed in the secret's current status."""


# Custody and disclosure


class AuthenticationFailed(DeadManSwitchError):
    """GCM tag did not verify; the stored share is corrupt or the key is wrong."""


class DecryptionFailed(DeadManSwitchError):
    """A triggered secret's share could not be decrypted for disclosure."""


class ShareAlreadyDeleted(DeadManSwitchError):
    """The owner revoked custody; there is nothing left to disclose."""

    def __init__(self, secret_id: str | None = None):
        super().__init__(
            "The server share has been deleted and is no longer available",
            secret_id=secret_id,
        )


class ShareAccessDenied(DeadManSwitchError):
    """Token does not grant access to this secret's share."""


# Delivery


class DeliveryError(DeadManSwitchError):
    """Notification provider failure with its transient/permanent classification."""

    def __init__(self, message: str, classification: str = "transient"):
        super().__init__(message)
        self.classification = classification

    @property
    def permanent(self) -> bool:
        return self.classification == "permanent"
