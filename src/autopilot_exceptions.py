"""
Error taxonomy for the Solar Autopilot decision pipeline.

None of these are process-fatal: every component catches them at its
I/O boundary and keeps the decision loop running on the best data it has.
"""


class AutopilotError(Exception):
    """Base class for all autopilot errors"""


class ConfigError(AutopilotError):
    """Feature disabled, credentials missing, or a persisted document is unusable"""


class NetworkError(AutopilotError):
    """External API or transport unreachable, timed out, or returned an error"""


class AuthError(AutopilotError):
    """Credentials were rejected by an external service"""


class ValidationError(AutopilotError):
    """Malformed rule, threshold, config field or recipient identifier"""


class PersistenceError(AutopilotError):
    """Durable store unreachable; callers degrade to in-memory operation"""
