import sys
import traceback
import services.logger as log

# Initialize logger
l = log.get_logger()


class BridgeError(Exception):
    """Base class for every error raised by the bridge itself."""


class ConfigError(BridgeError):
    """Configuration is invalid; the relay must not start."""


class MalformedPayloadError(BridgeError):
    """An inbound payload lacks structure required for routing."""


class DeliveryError(BridgeError):
    """A Sender failed to deliver to one destination."""

    def __init__(self, platform: str, destination_id: str, message: str):
        super().__init__(message)
        self.platform = platform
        self.destination_id = destination_id


def _handle_uncaught_exceptions(exc_type, exc_value, exc_traceback):
    """Global exception handler for uncaught exceptions."""
    if issubclass(exc_type, KeyboardInterrupt):
        # Call default handler for keyboard interrupt (e.g. Ctrl+C)
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return

    l.critical(
        "Unhandled exception caught:\n"
        + ''.join(traceback.format_exception(exc_type, exc_value, exc_traceback))
    )


# Install global exception hook
sys.excepthook = _handle_uncaught_exceptions


def raise_and_log(message: str, exception_type: type = BridgeError):
    """
    Log an error and then raise the specified exception.

    :param message: Error message to log and include in the exception.
    :param exception_type: Type of exception to raise (default: BridgeError).
    """
    l.error(f"Raising exception: {message}")
    raise exception_type(message)
