"""bank/ -- Customer accounts and transactions for the BankDVWA front end.

Layer rule: bank/ imports only stdlib + third-party libraries, core/ and auth/.
It does NOT import from api/, web/ or security/.
"""
