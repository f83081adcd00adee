"""Error taxonomy for the registration pipeline.

Every failure a registration can end in is a ``RegistrationError`` subclass
carrying the HTTP status code that crosses the trust boundary. The message is
for server-side logs only; clients only ever see the status code.
"""


class RegistrationError(Exception):
    """Base class for registration failures.

    Attributes:
        status_code: HTTP status returned to the reporting node.
        kind: Short machine-readable failure kind used in logs.
    """

    status_code: int = 500
    kind: str = "internal"

    def __init__(self, detail: str = "") -> None:
        self.detail = detail
        super().__init__(detail or self.kind)


class MalformedSubmission(RegistrationError):
    """Missing field, unknown field, or unparseable configuration text."""

    status_code = 400
    kind = "malformed"


class Unauthorized(RegistrationError):
    """Token missing, expired, exhausted or unknown."""

    status_code = 401
    kind = "unauthorized"


class HostConflict(RegistrationError):
    """The host identity is already registered."""

    status_code = 409
    kind = "conflict"


class RemoteTlsError(RegistrationError):
    """The cluster repository remote presented a rejected certificate."""

    status_code = 526
    kind = "tls_error"


class InternalError(RegistrationError):
    """Filesystem, version-control or misconfiguration failure."""

    status_code = 500
    kind = "internal"


class RepositoryError(InternalError):
    """A git operation on the working copy failed or timed out."""


class ClusterShapeError(InternalError):
    """The cluster document does not have the expected registry shape."""
