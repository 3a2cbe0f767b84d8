"""
Persistent storage for OAuth bridge state.
"""

from .token_store import TokenStore, create_key_value_backend

__all__ = ["TokenStore", "create_key_value_backend"]
