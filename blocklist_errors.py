"""
Exception hierarchy for Blocklister.

Each error carries the process exit code the command line shell uses when the
error reaches the top level. Storage errors live in storage_backends.py next
to the backends that raise them.
"""


class BlocklisterError(Exception):
    """Base class for all Blocklister errors."""

    exit_code = 1


class ConfigurationError(BlocklisterError):
    """Raised when a signature, duration, address or other setting is invalid."""

    exit_code = 1


class InvalidPatternError(ConfigurationError):
    """Raised when a whitelist regex or CIDR range cannot be registered."""

    pass


class MissingConfigurationError(BlocklisterError):
    """Raised when the configuration file has not been installed."""

    exit_code = 4


class BackendQueryError(BlocklisterError):
    """Raised for a failed search against a single index. Never fatal."""

    pass


class NotificationError(BlocklisterError):
    """Raised when an alert cannot be delivered. Never fatal."""

    pass
