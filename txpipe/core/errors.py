# /txpipe/core/errors.py
from txpipe.core.types import RejectionReason


class PipelineError(Exception):
    """Base class for every error the pipeline surfaces to callers."""


class SequencingError(PipelineError):
    pass


class SigningError(PipelineError):
    pass


class WarmupFailedError(SigningError):
    pass


class MalformedDigestError(SigningError):
    pass


class MalformedSignatureError(SigningError):
    pass


class BuildError(PipelineError):
    pass


class KillSwitchActiveError(PipelineError):
    pass


class EndpointError(PipelineError):
    pass


class EndpointTransportError(EndpointError):
    """The request never produced an answer from the node (timeout, reset, 5xx)."""


class EndpointRejection(EndpointError):
    """The node answered and refused the transaction."""

    def __init__(self, reason: RejectionReason, message: str):
        super().__init__(f"{reason.value}: {message}")
        self.reason = reason
        self.message = message
