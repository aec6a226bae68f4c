"""Workflow-level exceptions raised by the orchestration layer."""


class ConfigurationError(RuntimeError):
    """A required setting (e.g. the platform API token) is missing at call time."""


class InvalidUrlError(ValueError):
    """The submitted URL cannot be normalized into a site."""


class ProvisioningError(RuntimeError):
    """A provisioning workflow failed and could not return a partial result."""


class ProvisioningTimeout(ProvisioningError):
    """A bounded poll loop gave up before the remote resource became ready."""


class ResourceNotFoundError(LookupError):
    """An agent or knowledge base the caller referred to does not exist."""
