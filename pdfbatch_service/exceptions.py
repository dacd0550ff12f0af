"""Exceptions raised by the batch PDF service.

Batch-level errors (`BatchValidationError`, `EngineStartError`) abort a
request. Item-level errors (`RenderError` and its subclasses) are recorded
against a single document while the batch carries on.
"""

from typing import Optional


class PdfBatchError(Exception):
    """Base class for every error raised by this package."""


class BatchValidationError(PdfBatchError):
    """The incoming batch is malformed; a client fault that is never retried."""


class EmptyBatchError(BatchValidationError):
    """The batch carried no items."""

    def __init__(self, message: str = "No items were provided for rendering."):
        super().__init__(message)


class AssetFetchError(PdfBatchError):
    """
    The shared asset (logo) could not be downloaded.

    Attributes:
        url: Asset URL that was requested
        status_code: HTTP status when the server answered with a non-2xx code
    """

    def __init__(self, message: str, url: str, status_code: Optional[int] = None):
        self.url = url
        self.status_code = status_code
        super().__init__(message)


class AssetFetchTimeout(AssetFetchError, TimeoutError):
    """The asset download exceeded its time budget."""


class EngineStartError(PdfBatchError):
    """The rendering engine could not be located or did not become ready."""


class RenderError(PdfBatchError):
    """
    Rendering a single item failed.

    Attributes:
        index: Position of the item in the batch
        cause: The underlying exception raised by the engine
    """

    def __init__(self, index: int, cause: BaseException):
        self.index = index
        self.cause = cause
        super().__init__(f"Item {index} failed to render: {cause}")

    @property
    def reason(self) -> str:
        return f"{type(self.cause).__name__}: {self.cause}"


class RenderTimeoutError(RenderError, TimeoutError):
    """Loading or exporting a single item exceeded its time budget."""


class EngineCrashedError(RenderError):
    """The engine process died; the owning session can no longer render."""
