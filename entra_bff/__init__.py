"""
Entra ID Backend-for-Frontend.

Authenticates browser users against Microsoft Entra ID with the OIDC
authorization code flow and PKCE, keeping every token server-side.
"""

__version__ = "1.0.0"
