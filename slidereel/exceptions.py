"""Custom exceptions for the slidereel service.

Every error that can reach the HTTP boundary derives from SlideReelError,
which carries a machine-readable code and the HTTP status to report.
The response body is always ``{"error": message}``.
"""


class SlideReelError(Exception):
    """Base exception for all slidereel application errors."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500
    message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        status_code: int | None = None,
    ):
        self.message = message or self.__class__.message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        super().__init__(self.message)

    def to_error_body(self) -> dict[str, str]:
        """Convert exception to the wire error shape."""
        return {"error": self.message}


# =============================================================================
# Validation Errors (400)
# =============================================================================


class RenderValidationError(SlideReelError):
    """Render request rejected before any work was started."""

    code = "VALIDATION_ERROR"
    status_code = 400
    message = "Invalid or missing slides data"


class UploadRejectedError(SlideReelError):
    """Uploaded file rejected at the boundary."""

    code = "UPLOAD_REJECTED"
    status_code = 400
    message = "No file uploaded"


# =============================================================================
# Asset Errors
# =============================================================================


class AssetResolutionError(SlideReelError):
    """A media reference could not be turned into a durable URL."""

    code = "ASSET_RESOLUTION_FAILED"
    status_code = 422
    message = "Asset could not be resolved"

    def __init__(self, segment_index: int | None, field: str, reason: str):
        self.segment_index = segment_index
        self.field = field
        self.reason = reason
        if segment_index is None:
            message = f"Failed to resolve {field}: {reason}"
        else:
            message = f"Failed to resolve {field} for slide {segment_index + 1}: {reason}"
        super().__init__(message)


class AssetFetchError(SlideReelError):
    """A renderer input could not be fetched or written into the engine."""

    code = "ASSET_FETCH_FAILED"
    status_code = 502
    message = "Asset could not be fetched"

    def __init__(self, segment_index: int | None, reason: str):
        self.segment_index = segment_index
        self.reason = reason
        if segment_index is None:
            message = f"Failed to load background music: {reason}"
        else:
            message = f"Failed to load media for slide {segment_index + 1}: {reason}"
        super().__init__(message)


# =============================================================================
# Render Errors
# =============================================================================


class RenderFailedError(SlideReelError):
    """The render engine failed; the message is the engine's own text."""

    code = "RENDER_FAILED"
    status_code = 500
    message = "Render failed"


class MediaEngineError(RenderFailedError):
    """The embedded media engine failed to load or to execute a graph."""

    code = "MEDIA_ENGINE_ERROR"


class RenderCancelledError(SlideReelError):
    """The caller went away before the render finished.

    Not a failure: it is logged informationally and never reported as an error body.
    """

    code = "RENDER_CANCELLED"
    status_code = 499
    message = "Render cancelled"


class LoudnessNormalizationError(SlideReelError):
    """Post-render loudness normalization failed."""

    code = "NORMALIZATION_FAILED"
    message = "Audio normalization failed"
