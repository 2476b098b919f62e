class CdtoolError(RuntimeError):
    """Base error for every failure that aborts a cdtool command."""


class JobConfigError(CdtoolError):
    """Raised when required input is missing or malformed."""


class ClusterError(CdtoolError):
    """Raised when the Kubernetes API cannot be reached or rejects a call."""


class SourceServerError(CdtoolError):
    """Raised when a local image cannot be staged or served."""
