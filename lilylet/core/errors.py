from typing import Optional


class ParseError(ValueError):
    """Raised when source text is structurally malformed."""

    def __init__(self, message: str, position: Optional[int] = None):
        if position is not None:
            message = f"{message} (at offset {position})"
        super().__init__(message)
        self.position = position


class EmptyInputError(ParseError):
    """Raised when a decode produces no tune or no measures at all."""


class EncodeError(ValueError):
    """Raised when a document holds something an encoder cannot express."""
