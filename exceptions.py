"""Custom exception classes for the league stats pipeline and formula engine.

Errors here are scoped: an ``InvalidRegionError`` is fatal to one region, an
OCR error is fatal to one screenshot, a ``FormulaCompileError`` is fatal to
one formula. Callers decide whether the surrounding batch continues.
``OutOfRangeWarning`` is never raised — it is recorded on the normalized
record so reviewers can see why a field's confidence dropped to zero.
"""


class InvalidImageError(Exception):
    """Raised when the uploaded bytes cannot be decoded into an image.

    Args:
        reason: Human-readable explanation of why decoding failed.
    """

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Invalid image: {reason}")


class InvalidRegionError(Exception):
    """Raised when a region's geometry cannot be used for OCR.

    Covers negative origins, slivers at or below ``MIN_REGION_SIZE`` and
    rectangles that extend past the source image bounds.

    Args:
        region_id: Identifier of the offending region.
        reason: Human-readable explanation of why the region is invalid.
    """

    def __init__(self, region_id: str, reason: str) -> None:
        self.region_id = region_id
        self.reason = reason
        super().__init__(f"Invalid region '{region_id}': {reason}")


class OCRTimeoutError(Exception):
    """Raised when the recognizer does not answer within the timeout.

    Fatal to the screenshot being processed. The pipeline never retries;
    retry policy belongs to the caller.

    Args:
        region_id: The region whose recognition timed out.
        timeout: The timeout in seconds that was exceeded.
    """

    def __init__(self, region_id: str, timeout: float) -> None:
        self.region_id = region_id
        self.timeout = timeout
        super().__init__(
            f"OCR timed out for region '{region_id}' after {timeout}s"
        )


class OCRUnavailableError(Exception):
    """Raised when the OCR engine cannot be loaded or fails while running.

    Args:
        reason: Human-readable explanation, usually the underlying error.
    """

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"OCR engine unavailable: {reason}")


class OutOfRangeWarning(UserWarning):
    """Records a parsed value that fell outside its field's bounds.

    The normalizer clamps the value and zeroes the field's confidence; this
    object travels with the record so the reason stays traceable.

    Args:
        field: Catalog name of the field.
        value: The parsed value before clamping.
        minimum: The field's lower bound.
        maximum: The field's upper bound.
    """

    def __init__(
        self,
        field: str,
        value: float,
        minimum: float,
        maximum: float,
    ) -> None:
        self.field = field
        self.value = value
        self.minimum = minimum
        self.maximum = maximum
        super().__init__(
            f"Value for '{field}' out of range: {value} not in "
            f"[{minimum}, {maximum}]"
        )


class FormulaCompileError(ValueError):
    """Raised when a rating formula cannot be compiled.

    Carries the 0-based character offset of the offending token so an editor
    can highlight it.

    Args:
        message: What is wrong with the expression.
        position: Offset of the offending token in the source string.
        token: The offending token text, if any.
    """

    def __init__(self, message: str, position: int, token: str = "") -> None:
        self.message = message
        self.position = position
        self.token = token
        super().__init__(f"{message} (at position {position})")


class FormulaEvaluationError(Exception):
    """Raised when a compiled formula cannot be evaluated against a record.

    Happens when the record does not carry a field the formula references,
    e.g. a record built from an older catalog.

    Args:
        field: The field that could not be resolved.
        reason: Human-readable explanation.
    """

    def __init__(self, field: str, reason: str) -> None:
        self.field = field
        self.reason = reason
        super().__init__(f"Cannot evaluate field '{field}': {reason}")
