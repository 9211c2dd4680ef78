"""Custom exception types for picatools operations."""


class PicaToolsError(Exception):
    """Base exception for all picatools operations."""


class FileOperationError(PicaToolsError):
    """Raised when file I/O operations fail."""


class ConfigurationError(PicaToolsError):
    """Raised when the run configuration is unusable."""


class InvalidDataError(PicaToolsError):
    """Raised when input data cannot be processed at all."""


class TransformError(PicaToolsError):
    """Raised when transforming a single record fails."""


class LookupServiceError(PicaToolsError):
    """Raised when the bibliographic lookup service fails."""
