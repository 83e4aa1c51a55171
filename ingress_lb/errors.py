class IngressLBError(Exception):
    """Base class for reconciliation errors raised by the controller core."""


class AnnotationError(IngressLBError):
    """An Ingress annotation could not be parsed; only the affected feature is skipped."""

    def __init__(self, annotation, message):
        super().__init__(f"Invalid value for annotation '{annotation}': {message}")
        self.annotation = annotation


class RuleConfigError(IngressLBError):
    """A host/path pattern could not be turned into a policy rule."""


class InvalidSecretError(IngressLBError):
    """A TLS secret exists but does not carry a usable certificate and key."""


class DNSResolutionError(IngressLBError):
    """Host-based address resolution failed for an Ingress."""
