"""server-init: token-gated self-registration of NixOS nodes.

A registrar accepts registrations from new machines and merges their
configuration into a git-backed cluster definition; a reporter runs on the
new machine and submits it.
"""

__version__ = "0.1.0"
