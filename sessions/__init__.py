"""sessions/ -- Server-held sessions for BankDVWA.

Layer rule: sessions/ imports only stdlib, third-party libraries and core/.
security/ and auth/ operate on the Session handle defined here; they never
reach into the store or the cookie directly.
"""
