from typing import Optional


class RelayError(Exception):
    """Base for errors that are reported back to the chat instead of crashing the handler."""

    default_message = "Something went wrong."

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class CapacityExceeded(RelayError):
    def __init__(self, side: str, limit: int):
        super().__init__(f"⚠️ Maximum {limit} {side.upper()} images reached.")
        self.side = side
        self.limit = limit


class NoPendingImage(RelayError):
    default_message = "Send an image first, then type front/back."


class DownloadError(RelayError):
    def __init__(self, attempts: int, cause: Optional[BaseException] = None):
        reason = str(cause) if cause else "unknown error"
        super().__init__(f"Download failed after {attempts} attempts: {reason}")
        self.attempts = attempts
        self.cause = cause


class IncompleteGroup(RelayError):
    def __init__(self, incomplete: int):
        super().__init__(
            f"{incomplete} ID group(s) are missing a front or back image. "
            "Add the missing side, or /reset to start over."
        )
        self.incomplete = incomplete


class InsufficientInput(RelayError):
    default_message = "I need at least one complete ID (1 front + 1 back). Send images and mark them as front/back."


class Unauthorized(RelayError):
    default_message = "This command is only available to the operator."
