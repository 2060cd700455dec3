"""
Error taxonomy for the Heritage wallet CLI.

Every error raised by the orchestration layer derives from HeritageCliError so
the command layer can report it uniformly. Backend errors are raised by the
backends themselves and propagate unchanged.
"""

from __future__ import annotations


class HeritageCliError(Exception):
    pass


# Input validation: reported before any backend is touched


class InputValidationError(HeritageCliError):
    """Malformed or contradictory user input."""


class AmbiguousDrainTarget(InputValidationError):
    def __init__(self) -> None:
        super().__init__("drain-all amount ('all') allowed only with exactly one recipient")


class FeeRateTooLow(InputValidationError):
    def __init__(self, rate: float) -> None:
        super().__init__(f"Fee rate must be greater or equal to 1.0 sat/vB, got {rate}")
        self.rate = rate


class ConflictingFeePolicy(InputValidationError):
    def __init__(self) -> None:
        super().__init__("--fee-rate and --fee-absolute cannot be used together")


class InvalidAddressNetwork(InputValidationError):
    pass


# Capability mismatches: the loaded entity lacks the backend variant requested


class CapabilityMismatchError(HeritageCliError):
    pass


class IncorrectKeyProvider(CapabilityMismatchError):
    def __init__(self, expected: str) -> None:
        super().__init__(f"This operation requires a {expected} key-provider")
        self.expected = expected


class IncorrectOnlineWallet(CapabilityMismatchError):
    def __init__(self, expected: str) -> None:
        super().__init__(f"This operation requires a {expected} online-wallet")
        self.expected = expected


class MissingEngine(CapabilityMismatchError):
    def __init__(self, what: str) -> None:
        super().__init__(f"No PSBT engine installed: cannot {what}")


# Backend errors


class BackendError(HeritageCliError):
    """A backend call failed."""


class BackendUnavailableError(BackendError):
    """Network, hardware or service unreachable. Never retried by the core."""


class DeviceUnavailable(BackendUnavailableError):
    pass


class UnreachableProvider(BackendUnavailableError):
    pass


class Unauthenticated(BackendError):
    def __init__(self, message: str = "Not logged in to the Heritage service") -> None:
        super().__init__(message)


# Secret prompts


class SecretPromptError(HeritageCliError):
    pass


class PasswordMismatch(SecretPromptError):
    def __init__(self) -> None:
        super().__init__("Passwords did not match")


class PromptFailed(SecretPromptError):
    pass


class IncorrectPassword(HeritageCliError):
    def __init__(self) -> None:
        super().__init__("Incorrect password: the derived fingerprint does not match")


# Store


class NameConflictError(HeritageCliError):
    def __init__(self, kind: str, name: str) -> None:
        super().__init__(f"A {kind} named \"{name}\" already exists")
        self.kind = kind
        self.name = name


class EntityNotFoundError(HeritageCliError):
    def __init__(self, kind: str, name: str) -> None:
        super().__init__(f"No {kind} named \"{name}\"")
        self.kind = kind
        self.name = name


class UserCancelledError(HeritageCliError):
    """
    The user declined a confirmation.

    Not a failure: the command reports the message and exits successfully
    without having changed any state.
    """


class StoreError(HeritageCliError):
    """The database file cannot be read."""
