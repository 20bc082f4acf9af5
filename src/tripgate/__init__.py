"""Tripgate — passkey authentication and trip access control.

The identity and authorization core behind a shared trip photo map:
passwordless registration and login, signed session tokens, per-trip
viewer/editor grants, and invite codes that turn into grants.
"""

__version__ = "0.1.0"
