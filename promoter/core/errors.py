"""
Error taxonomy for promotion execution.

ConfigurationError and TerminalError abort a promotion pass immediately.
TechnicalError is counted against a step's error threshold before it
becomes fatal.
"""


class PromoterError(Exception):
    """Base class for all promoter errors."""


class ConfigurationError(PromoterError):
    """Bad step configuration, unknown step kind or forbidden alias."""


class TerminalError(PromoterError):
    """A step failure that must not be retried."""


class PermissionDeniedError(PromoterError):
    """A resource does not permit mutation by the current stage."""


class TechnicalError(PromoterError):
    """A transient failure talking to an external system."""


class NotFoundError(TechnicalError):
    """A requested cluster resource does not exist."""

    def __init__(self, kind: str, namespace: str, name: str):
        self.kind = kind
        self.namespace = namespace
        self.name = name
        super().__init__(f"{kind} {name!r} not found in namespace {namespace!r}")


def join_errors(errors) -> str:
    """Join several error messages into one, one per line."""
    return "\n".join(str(e) for e in errors)
