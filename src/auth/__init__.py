"""
OAuth bridge between MCP clients and the Microsoft identity platform.

Modules:
- provider: Client registration, authorization codes and bridged tokens
- bridge: /authorize and /callback relaying the user to Microsoft sign-in
- client_resolver: Static client alias for clients that skip registration
- token_exchange: Token lifecycle callback run on every token grant
- upstream: Microsoft token endpoint client
- signing: State, approval cookie and props encryption
- verifier: Bearer token verification for the MCP endpoint

Submodules are imported directly (e.g. `from auth.provider import OAuthProvider`)
because storage depends on auth.models.
"""
