"""auth/ -- Users, passwords, session authentication and the audit log for BankDVWA.

Layer rule: auth/ imports only stdlib + third-party libraries, core/ and sessions/.
The exception is auth/dependencies.py, which wires the security/ access gate
into FastAPI's dependency injection.
It does NOT import from api/, web/ or bank/.
api/ and web/ import from auth/, not the other way around.
"""
