"""
Exception hierarchy for the trading platform.

All custom exceptions derive from TradingPlatformError so callers can catch
platform failures without swallowing programming errors.
"""


class TradingPlatformError(Exception):
    """
    Base exception for all trading platform errors.

    Example:
        >>> try:
        ...     reader.read_market_data(dataset)
        ... except TradingPlatformError as e:
        ...     logger.error(f"Platform error: {e}")
    """

    pass


class DataQualityError(TradingPlatformError):
    """
    Raised when input data fails validation.

    This includes missing required columns, files with no usable rows,
    or any other data integrity issue that makes a dataset unusable.
    """

    pass


class ConfigurationError(TradingPlatformError):
    """
    Raised when required configuration is missing or invalid.

    Example:
        >>> if not dataset.storage_location:
        ...     raise ConfigurationError("dataset has no storage location")
    """

    pass
