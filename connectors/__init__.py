"""
connectors — external integration gateway.

Provides:
  • Tenant API connections with AES-256-GCM encrypted credentials
  • Per-connection sliding-window rate limiting
  • Retrying dispatch with exponential backoff and auth injection
  • OAuth2 authorization-code flow: auth URL, callback, refresh, revocation

Entry points are ``ApiConnector`` (api_connector.py) and ``OAuth2Manager``
(oauth2_manager.py).  Provider-specific user-info and revocation live in
profile subclasses of ``BaseProviderProfile``.
"""
