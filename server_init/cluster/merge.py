"""Host identity and the cluster registry merge.

The cluster document's top-level attribute set carries a registry attribute
(``hosts`` by default) listing one entry per registered machine::

    {
      hosts = {
        "3f0c…" = {
          publicKey = "ssh-ed25519 AAAA…";
          hardwareConfiguration = ../hosts/3f0c…/hardware.conf;
          configuration = ../hosts/3f0c…/os.conf;
        };
      };
    }

Entries are keyed by host identity, a digest of the SSH host key, because the
address a node reports is self-declared and changes between boots.
"""

import base64
import binascii
import hashlib
import posixpath
import struct
from dataclasses import dataclass, field

import structlog

from server_init.errors import ClusterShapeError, HostConflict, InternalError
from server_init.nix import (
    ConfigDocument,
    Node,
    NodeKind,
    ParseError,
    binding_path,
    defined_names,
    escape_string,
    is_path_literal,
)

logger = structlog.get_logger(__name__)

HARDWARE_FILE = "hardware.conf"
OS_FILE = "os.conf"

SSH_KEY_TYPES = frozenset(
    {
        "ssh-ed25519",
        "ssh-rsa",
        "ecdsa-sha2-nistp256",
        "ecdsa-sha2-nistp384",
        "ecdsa-sha2-nistp521",
        "sk-ssh-ed25519@openssh.com",
        "sk-ecdsa-sha2-nistp256@openssh.com",
    }
)


class InvalidHostCredential(ValueError):
    """The submitted host key is not an OpenSSH public key line."""


@dataclass(frozen=True)
class HostCredential:
    """A parsed OpenSSH public host key.

    Attributes:
        key_type: Algorithm name, e.g. ``ssh-ed25519``.
        blob: Decoded key blob.
        comment: Trailing comment, usually ``root@hostname``.
    """

    key_type: str
    blob: bytes
    comment: str = ""

    @classmethod
    def parse(cls, text: str) -> "HostCredential":
        """Parse a ``<type> <base64> [comment]`` line.

        Raises:
            InvalidHostCredential: On any deviation from that format.
        """
        lines = [line for line in text.strip().splitlines() if line.strip()]
        if len(lines) != 1:
            raise InvalidHostCredential("expected exactly one public key line")
        fields = lines[0].split(None, 2)
        if len(fields) < 2:
            raise InvalidHostCredential("expected '<type> <base64>'")
        key_type, encoded = fields[0], fields[1]
        if key_type not in SSH_KEY_TYPES:
            raise InvalidHostCredential(f"unsupported key type {key_type!r}")
        try:
            blob = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise InvalidHostCredential("key data is not valid base64") from exc

        # The blob starts with the length-prefixed algorithm name.
        if len(blob) < 4:
            raise InvalidHostCredential("key data is truncated")
        (name_len,) = struct.unpack(">I", blob[:4])
        if blob[4:4 + name_len] != key_type.encode():
            raise InvalidHostCredential("key data does not match key type")

        comment = fields[2].strip() if len(fields) > 2 else ""
        return cls(key_type=key_type, blob=blob, comment=comment)

    @property
    def identity(self) -> str:
        """Stable registry key: first 32 hex digits of SHA-256(blob)."""
        return hashlib.sha256(self.blob).hexdigest()[:32]

    @property
    def fingerprint(self) -> str:
        """OpenSSH-style ``SHA256:`` fingerprint."""
        digest = hashlib.sha256(self.blob).digest()
        return "SHA256:" + base64.b64encode(digest).decode().rstrip("=")

    @property
    def public_key(self) -> str:
        """Normalized ``<type> <base64>`` form, without the comment."""
        return f"{self.key_type} {base64.b64encode(self.blob).decode()}"


def host_identity(host_credential: str) -> str:
    """Derive the host identity from raw public key text."""
    return HostCredential.parse(host_credential).identity


@dataclass
class MergeResult:
    """Outcome of a successful merge.

    Attributes:
        document: Updated cluster document.
        files: Repository-relative path → new file content, for every file
            to be written (cluster document included).
        host_identity: Identity of the added host.
    """

    document: ConfigDocument
    files: dict[str, str] = field(default_factory=dict)
    host_identity: str = ""

    @property
    def changed_paths(self) -> list[str]:
        return sorted(self.files)


def locate_cluster_root(doc: ConfigDocument, attribute: str = "hosts") -> Node:
    """Find the registry attribute set inside the cluster document.

    Raises:
        ClusterShapeError: The top-level value is not an attribute set, or it
            does not define ``attribute`` exactly once as a literal attribute set.
    """
    body = doc.body()
    if body.kind is not NodeKind.ATTR_SET:
        raise ClusterShapeError(
            f"top-level value must be an attribute set, found {body.kind.value}"
        )

    matches = [
        child
        for child in body.children
        if child.kind is NodeKind.BINDING and binding_path(child) == [attribute]
    ]
    if not matches:
        raise ClusterShapeError(f"no '{attribute} = {{ ... }};' binding at top level")
    if len(matches) > 1:
        raise ClusterShapeError(f"'{attribute}' is defined more than once")

    value = matches[0].children[1]
    if value.kind is not NodeKind.ATTR_SET:
        raise ClusterShapeError(
            f"'{attribute}' must be an attribute set, found {value.kind.value}"
        )
    return value


def registered_identities(doc: ConfigDocument, attribute: str = "hosts") -> list[str]:
    """Identities currently listed in the registry."""
    return defined_names(locate_cluster_root(doc, attribute))


def host_paths(identity: str, hosts_dir: str = "hosts") -> tuple[str, str]:
    """Repository-relative paths of a host's hardware and OS documents."""
    base = posixpath.join(hosts_dir, identity)
    return posixpath.join(base, HARDWARE_FILE), posixpath.join(base, OS_FILE)


def _path_literal(target: str, cluster_path: str) -> str:
    relative = posixpath.relpath(target, posixpath.dirname(cluster_path) or ".")
    if not relative.startswith(("./", "../")):
        relative = "./" + relative
    if not is_path_literal(relative):
        raise InternalError(f"cannot express {target!r} as a Nix path literal")
    return relative


def render_host_entry(
    credential: HostCredential,
    hardware_path: str,
    os_path: str,
    cluster_path: str,
) -> str:
    """Nix text of one registry entry, unindented."""
    return "\n".join(
        [
            f"{escape_string(credential.identity)} = {{",
            f"  publicKey = {escape_string(credential.public_key)};",
            f"  hardwareConfiguration = {_path_literal(hardware_path, cluster_path)};",
            f"  configuration = {_path_literal(os_path, cluster_path)};",
            "};",
        ]
    )


def merge_host_entry(
    cluster_doc: ConfigDocument,
    credential: HostCredential,
    hardware_doc: ConfigDocument,
    os_doc: ConfigDocument,
    *,
    cluster_path: str = "secrets/secrets.nix",
    hosts_dir: str = "hosts",
    registry_attribute: str = "hosts",
) -> MergeResult:
    """Add a host entry to the cluster document.

    Args:
        cluster_doc: Current cluster document.
        credential: Parsed host key of the registering node.
        hardware_doc: Parsed hardware configuration of the node.
        os_doc: Parsed OS configuration of the node.
        cluster_path: Repository-relative path of ``cluster_doc``.
        hosts_dir: Repository-relative directory for per-host files.
        registry_attribute: Name of the registry attribute.

    Returns:
        The updated document and the files to write.

    Raises:
        ClusterShapeError: The cluster document has no usable registry.
        HostConflict: The identity is already registered.
        InternalError: The edited document failed its post-merge checks.
    """
    identity = credential.identity
    registry = locate_cluster_root(cluster_doc, registry_attribute)
    existing = defined_names(registry)
    if identity in existing:
        raise HostConflict(f"host {identity} is already registered")

    hardware_path, os_path = host_paths(identity, hosts_dir)
    entry = render_host_entry(credential, hardware_path, os_path, cluster_path)

    try:
        updated = cluster_doc.insert_binding(registry, entry)
    except ParseError as exc:
        raise InternalError(f"merged cluster document does not parse: {exc}") from exc

    names = defined_names(locate_cluster_root(updated, registry_attribute))
    if len(names) != len(existing) + 1 or names.count(identity) != 1:
        raise InternalError("merged cluster document has an unexpected registry")

    logger.info(
        "host_entry_merged",
        host_identity=identity,
        registry_size=len(names),
    )
    return MergeResult(
        document=updated,
        files={
            cluster_path: updated.serialize(),
            hardware_path: hardware_doc.serialize(),
            os_path: os_doc.serialize(),
        },
        host_identity=identity,
    )
