"""
Deployer Errors

Every failure the control plane surfaces carries a stable ``code`` that the
HTTP layer returns to callers.
"""
from typing import Optional


class DeployerError(Exception):
    """Base class for control plane failures."""

    code = "deployer_error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.code)


class InvalidProduct(DeployerError):
    code = "invalid_product"


class ProviderUnset(DeployerError):
    code = "provider_unset"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or "PROVIDER_ADDR not set")


class IdentityUnavailable(DeployerError):
    code = "identity_unavailable"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or "AKASH_MNEMONIC missing and key not found")


class NoLeaseFromProvider(DeployerError):
    code = "no_lease_from_provider"


class ManifestSendFailed(DeployerError):
    code = "manifest_send_failed"


class QueueUnavailable(DeployerError):
    code = "queue_unavailable"


class Unauthorized(DeployerError):
    code = "unauthorized"


class ExecError(DeployerError):
    """An external command exited non-zero or could not be spawned."""

    code = "exec_error"
