"""Authentication and authorization.

Learn: Passkeys only — no passwords anywhere.
1. Ceremonies (webauthn.py) prove possession of a registered key
2. A successful ceremony yields a signed session token (jwt.py)
3. Every request presents that token; trip routes also check roles (roles.py)

All three resolve to a "current identity" in dependencies.py.
"""
