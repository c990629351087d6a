"""auth/ -- Authentication and token-lifecycle package for the marketplace backend.

Credential verification, access-token issuance, refresh-token rotation with
reuse detection, and password-reset tokens.

Layer rule: auth/ imports only stdlib, third-party libraries, and core/.
Transport layers (HTTP handlers, CLIs) import from auth/, not the other way around.
"""
