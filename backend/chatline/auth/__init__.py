"""Authentication module (bearer tokens).

Tokens are issued elsewhere; this package only verifies them and turns the
claims into a Principal that is attached to a connection or request.

Services:
    - TokenVerifier: HS256 JWT verification (and issuing, for dev/tests).
"""
