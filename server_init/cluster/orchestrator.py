"""Registration request handling.

Each request walks one instance of the registration state machine::

    RECEIVED → AUTHENTICATED → PARSED → MERGED → COMMITTED → RESPONDED
        \\__________\\____________\\_________\\_________→ FAILED(kind)

and ends in a single HTTP status code. Nothing but that code is returned to
the node; details are logged server-side without the token or host key.
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

import structlog
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from server_init.cluster.merge import (
    HostCredential,
    InvalidHostCredential,
    host_paths,
    merge_host_entry,
)
from server_init.cluster.repository import ClusterRepository
from server_init.errors import (
    HostConflict,
    InternalError,
    MalformedSubmission,
    RegistrationError,
    Unauthorized,
)
from server_init.nix import ConfigDocument, ParseError
from server_init.security.tokens import TokenNotFound, TokenStore, token_ref

logger = structlog.get_logger(__name__)


class RegistrationState(str, Enum):
    """Steps of one registration request."""

    RECEIVED = "received"
    AUTHENTICATED = "authenticated"
    PARSED = "parsed"
    MERGED = "merged"
    COMMITTED = "committed"
    RESPONDED = "responded"
    FAILED = "failed"


class RegistrationSubmission(BaseModel):
    """Registration payload sent by a node.

    Both the short wire names used by the reporter (``ip``, ``otp``,
    ``hostkey``, ``hardware_configuration``, ``configuration``) and the
    descriptive names are accepted. Unknown keys are rejected.
    """

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=False)

    reporter_address: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("ip", "reporterAddress", "reporter_address"),
        description="Address the node reports for itself",
    )
    token: str = Field(
        ...,
        validation_alias=AliasChoices("otp", "token"),
        description="One-time password authorizing the registration",
    )
    host_credential: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("hostkey", "hostCredential", "host_credential"),
        description="OpenSSH public host key",
    )
    hardware_config_text: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices(
            "hardware_configuration", "hardwareConfigText", "hardware_config_text"
        ),
        description="Contents of hardware-configuration.nix",
    )
    os_config_text: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("configuration", "osConfigText", "os_config_text"),
        description="Contents of configuration.nix",
    )

    def __repr__(self) -> str:
        return (
            f"RegistrationSubmission(reporter_address={self.reporter_address!r}, "
            f"token_ref={token_ref(self.token)!r})"
        )

    __str__ = __repr__


@dataclass
class RegistrationOutcome:
    """Result of handling one request."""

    state: RegistrationState
    status_code: int
    error_kind: Optional[str] = None
    host_identity: Optional[str] = None
    commit: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status_code == 200


def parse_submission(body: Union[bytes, str, dict[str, Any]]) -> RegistrationSubmission:
    """Decode and validate a request body.

    Raises:
        MalformedSubmission: Body is not a JSON object with exactly the
            expected string fields.
    """
    if isinstance(body, (bytes, str)):
        try:
            body = json.loads(body)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise MalformedSubmission(f"body is not JSON: {exc}") from exc
    if not isinstance(body, dict):
        raise MalformedSubmission("body is not a JSON object")
    try:
        return RegistrationSubmission.model_validate(body, strict=True)
    except ValidationError as exc:
        problems = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['type']}" for err in exc.errors()
        ]
        raise MalformedSubmission("; ".join(problems)) from exc


class RegistrationOrchestrator:
    """Runs registrations against a token store and the cluster repository.

    Args:
        token_store: Token store used for authentication.
        repository: Cluster repository working copy.
        auth_enabled: When False, tokens are not checked (trusted setups).
        hosts_dir: Repository-relative directory for per-host files.
    """

    def __init__(
        self,
        token_store: TokenStore,
        repository: ClusterRepository,
        auth_enabled: bool = True,
        hosts_dir: str = "hosts",
    ) -> None:
        self.token_store = token_store
        self.repository = repository
        self.auth_enabled = auth_enabled
        self.hosts_dir = hosts_dir

    def handle(self, body: Union[bytes, str, dict[str, Any]]) -> RegistrationOutcome:
        """Process one registration request body into an outcome.

        Never raises; every failure becomes a FAILED outcome with its status.
        """
        state = RegistrationState.RECEIVED
        identity: Optional[str] = None
        log = logger
        try:
            submission = parse_submission(body)
            log = logger.bind(
                reporter_address=submission.reporter_address,
                token_ref=token_ref(submission.token),
            )

            self._authenticate(submission)
            state = RegistrationState.AUTHENTICATED

            credential, hardware_doc, os_doc = self._parse(submission)
            identity = credential.identity
            log = log.bind(host_identity=identity, fingerprint=credential.fingerprint)
            state = RegistrationState.PARSED

            with self.repository.session():
                self.repository.clone_or_open()
                try:
                    cluster_doc = self.repository.load_cluster_document()
                except ParseError as exc:
                    raise InternalError(f"cluster document does not parse: {exc}") from exc

                result = merge_host_entry(
                    cluster_doc,
                    credential,
                    hardware_doc,
                    os_doc,
                    cluster_path=self.repository.cluster_document,
                    hosts_dir=self.hosts_dir,
                    registry_attribute=self.repository.registry_attribute,
                )
                for path in host_paths(identity, self.hosts_dir):
                    if self.repository.exists(path):
                        raise HostConflict(f"{path} already exists")
                state = RegistrationState.MERGED

                commit = self.repository.write_commit_push(
                    result.files, commit_message(identity)
                )
                state = RegistrationState.COMMITTED

        except RegistrationError as exc:
            log.warning(
                "registration_failed",
                state=state.value,
                kind=exc.kind,
                status=exc.status_code,
                detail=exc.detail,
            )
            return RegistrationOutcome(
                RegistrationState.FAILED, exc.status_code, exc.kind, identity
            )
        except Exception:
            log.exception("registration_crashed", state=state.value)
            return RegistrationOutcome(RegistrationState.FAILED, 500, "internal", identity)

        log.info("registration_accepted", commit=commit)
        return RegistrationOutcome(
            RegistrationState.RESPONDED, 200, None, identity, commit
        )

    def _authenticate(self, submission: RegistrationSubmission) -> None:
        if not self.auth_enabled:
            return
        try:
            self.token_store.consume(submission.token)
        except TokenNotFound as exc:
            raise Unauthorized("token invalid, expired or exhausted") from exc

    def _parse(
        self, submission: RegistrationSubmission
    ) -> tuple[HostCredential, ConfigDocument, ConfigDocument]:
        """Parse the host key and both configuration texts, checking each."""
        try:
            credential = HostCredential.parse(submission.host_credential)
        except InvalidHostCredential as exc:
            raise MalformedSubmission(f"hostkey: {exc}") from exc

        documents = {}
        for field_name in ("hardware_config_text", "os_config_text"):
            try:
                documents[field_name] = ConfigDocument.parse(getattr(submission, field_name))
            except ParseError as exc:
                raise MalformedSubmission(f"{field_name}: {exc}") from exc

        return credential, documents["hardware_config_text"], documents["os_config_text"]


def commit_message(host_identity: str) -> str:
    return f"Register host {host_identity}"
