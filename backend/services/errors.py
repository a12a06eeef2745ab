"""
Errors raised by the bill services.

Every error carries the HTTP status the routers answer with and a message
that is safe to show to the user.  Routers translate them into
``{"error": message}`` bodies; nothing here knows about FastAPI.
"""
from typing import Optional


class BillExtractionError(Exception):
    """Base class for every failure of the extraction pipeline."""
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


# ── Upload validation (400, raised before any model call) ─────────────────────

class FileValidationError(BillExtractionError):
    status_code = 400


class MissingImageError(FileValidationError):
    def __init__(self, message: str = "No image provided"):
        super().__init__(message)


class InvalidFileTypeError(FileValidationError):
    def __init__(self, content_type: Optional[str]):
        super().__init__("File must be an image")
        self.content_type = content_type


class FileTooLargeError(FileValidationError):
    def __init__(self, size: int, max_size: int):
        super().__init__("Image must be smaller than 10MB")
        self.size = size
        self.max_size = max_size


class UnsupportedImageError(FileValidationError):
    def __init__(self, content_type: Optional[str]):
        super().__init__("Unsupported image format")
        self.content_type = content_type


# ── Model response (the model answered, but not with a usable bill) ──────────

NOT_A_BILL_MESSAGE = (
    "This image does not appear to be a bill or receipt. "
    "Please upload a valid receipt with transaction details."
)


class NotABillError(BillExtractionError):
    """The model classified the image as something other than a bill."""
    status_code = 400
    error_code = "NOT_A_BILL"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or NOT_A_BILL_MESSAGE)


class ParseError(BillExtractionError):
    pass


class StructureError(BillExtractionError):
    pass


class ItemStructureError(StructureError):
    def __init__(self, index: int, reason: str):
        super().__init__(f"Invalid item structure in response (item {index}: {reason})")
        self.index = index


class LabelError(StructureError):
    def __init__(self, index: int, field: str):
        super().__init__(f"Invalid itemLabel structure in response (item {index}: {field})")
        self.index = index
        self.field = field


class NoValidItemsError(BillExtractionError):
    def __init__(self, message: str = "No valid items found after validation"):
        super().__init__(message)


# ── Outbound call ─────────────────────────────────────────────────────────────

class ModelCallError(BillExtractionError):
    """Provider misconfigured, unreachable, timed out or returned an API error."""
    pass


# ── Split calculator ──────────────────────────────────────────────────────────

class SplitError(Exception):
    """Raised for inconsistent split requests (422 at the router)."""
    pass
