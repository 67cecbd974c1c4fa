"""
Error taxonomy for node generation jobs
"""

from typing import Any, Optional


class GenerationError(Exception):
    """Base class for every error raised while running a node's generation job."""


class ValidationError(GenerationError):
    """The caller supplied insufficient or contradictory input."""


class UploadError(GenerationError):
    """Uploading an input file to provider storage failed."""


class ProviderError(GenerationError):
    """A provider rejected a submit/poll call or reported a failed task."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Any = None,
        request_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.request_id = request_id

    def __str__(self) -> str:
        message = super().__str__()
        if self.request_id:
            return f"{message} (request id: {self.request_id})"
        return message


class MalformedResponseError(GenerationError):
    """A provider response could not be parsed or lacked the expected result."""


class JobTimeoutError(GenerationError):
    """The job did not reach a terminal state within the allowed wait."""


class JobCancelledError(GenerationError):
    """The user cancelled the job."""


class NodeNotFoundError(KeyError):
    def __init__(self, node_id: str):
        super().__init__(node_id)
        self.node_id = node_id

    def __str__(self) -> str:
        return f"Node {self.node_id} not found"


class NodeBusyError(RuntimeError):
    """A generate request arrived for a node that already has an active job."""

    def __init__(self, node_id: str):
        super().__init__(f"Node {node_id} already has an active generation job")
        self.node_id = node_id
