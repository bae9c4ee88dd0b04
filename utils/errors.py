"""
utils/errors.py

Exception taxonomy for the detection core. Shape and config errors are fatal to
the call that raised them; degenerate ground truth is logged, never raised.
"""


class DetectCoreError(Exception):
    """Base class for every error raised by the detection core."""


class ShapeMismatchError(DetectCoreError, ValueError):
    """A tensor disagrees with the declared channel count, anchor count or rank."""
    def __init__(self, message, declared=None, expected=None):
        self.declared = declared
        self.expected = expected
        if declared is not None or expected is not None:
            message = f"{message} (got {declared}, expected {expected})"
        super().__init__(message)


class ConfigError(DetectCoreError, ValueError):
    """Invalid construction-time configuration."""


class DeviceMismatchError(DetectCoreError, RuntimeError):
    """Cached state lives on a different device/dtype and rebuilding is disabled."""
