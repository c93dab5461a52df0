"""
Error kinds raised by the caretaker grant and sweep paths.
"""


class CaretakerError(Exception):
    """Base class for every failure the request handler reports back."""


class DomainNotFoundError(CaretakerError):
    def __init__(self, domain: str):
        self.domain = domain
        super().__init__(f"No ingress found for domain {domain}")


class UnsupportedBackendError(CaretakerError):
    def __init__(self, ingress_class: str):
        self.ingress_class = ingress_class
        super().__init__(
            f"Only the Nginx ingress controller is supported (got ingress class '{ingress_class or 'none'}')"
        )


class NotManagedError(CaretakerError):
    def __init__(self, name: str, namespace: str):
        self.name = name
        self.namespace = namespace
        super().__init__(f"The service {namespace}/{name} is not auto-managed")


class DuplicateRuleError(CaretakerError):
    def __init__(self, iprange: str):
        self.iprange = iprange
        super().__init__(f"IP address {iprange} already whitelisted")


class RuleNotFoundError(CaretakerError):
    def __init__(self, iprange: str):
        self.iprange = iprange
        super().__init__(f"IP address {iprange} not found")


class RemoteError(CaretakerError):
    """An API server call failed. ``status`` is its HTTP status, if any."""

    action = "read"

    def __init__(self, name: str, namespace: str, status: int | None, reason: str = ""):
        self.name = name
        self.namespace = namespace
        self.status = status
        target = f"{namespace}/{name}" if namespace else name
        detail = f"{status} {reason}" if status is not None else reason
        super().__init__(f"Failed to {self.action} {target}: {detail}".rstrip())

    @property
    def is_conflict(self) -> bool:
        return self.status == 409


class PersistError(RemoteError):
    action = "update service"


class CredentialError(CaretakerError):
    def __init__(self, detail: str = ""):
        super().__init__("No credentials available" + (f": {detail}" if detail else ""))
