"""Cluster registration: merging self-reporting nodes into the cluster repository.

  - merge: host identity derivation and the registry merge on Nix documents.
  - repository: the locked git working copy (clone/open, commit, push).
  - orchestrator: the per-request registration state machine.
"""

from server_init.cluster.merge import (
    HostCredential,
    InvalidHostCredential,
    MergeResult,
    host_identity,
    locate_cluster_root,
    merge_host_entry,
)
from server_init.cluster.orchestrator import (
    RegistrationOrchestrator,
    RegistrationOutcome,
    RegistrationState,
    RegistrationSubmission,
)
from server_init.cluster.repository import ClusterRepository

__all__ = [
    "ClusterRepository",
    "HostCredential",
    "InvalidHostCredential",
    "MergeResult",
    "RegistrationOrchestrator",
    "RegistrationOutcome",
    "RegistrationState",
    "RegistrationSubmission",
    "host_identity",
    "locate_cluster_root",
    "merge_host_entry",
]
