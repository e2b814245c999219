"""security/ -- Security-level store, CSRF tokens, rate limiting, access gate and demo variants.

Layer rule: security/ imports only stdlib + third-party libraries, core/ and
sessions/. It does NOT import from api/, web/ or bank/. The access gate talks
to auth/ through the small SessionAuthenticator protocol in security/gate.py,
so auth/ can depend on security/ without a cycle.
"""
