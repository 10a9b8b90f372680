from __future__ import annotations


class PdfPinsError(Exception):
    """Base error. `status` is the HTTP status the app answers with."""

    status = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message or self.__class__.__name__


class ValidationError(PdfPinsError):
    status = 400


class PageOutOfRange(ValidationError):
    pass


class Unauthorized(PdfPinsError):
    status = 403

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message)


class Unauthenticated(PdfPinsError):
    status = 401


class NotFound(PdfPinsError):
    status = 404


class FileNotFound(NotFound):
    pass


class NoteNotFound(NotFound):
    pass


class SessionClosed(PdfPinsError):
    status = 409

    def __init__(self, message: str = "Annotation session is closed") -> None:
        super().__init__(message)


class QuotaExhausted(PdfPinsError):
    status = 429

    def __init__(self, message: str = "AI usage quota exhausted") -> None:
        super().__init__(message)


class UpstreamError(PdfPinsError):
    """Network, storage or model API failure."""

    status = 502
