"""
Microsoft 365 MCP Server - MCP tools for Microsoft Graph behind an OAuth 2.1 bridge.

MCP clients register and authorize against this server with OAuth 2.1 + PKCE.
The server relays the user to Microsoft sign-in, exchanges the returned code
for Microsoft Graph tokens, and mints its own opaque tokens that carry the
Graph tokens to the tool layer.
"""

__version__ = "0.3.0"
