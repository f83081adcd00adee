"""Authorization for node registration.

Provides the one-time password (token) store: generation, read-only
validation, atomic consumption and administrative revocation.
"""

from server_init.security.tokens import Token, TokenNotFound, TokenStore, token_ref

__all__ = ["Token", "TokenNotFound", "TokenStore", "token_ref"]
