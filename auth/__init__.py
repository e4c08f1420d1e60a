"""auth/ -- Authentication package for QuickLearn.

Credential Store, OTP and reset-token ledgers, Token Issuer, Login Guardian,
Federated Identity Linker and the AuthService flows that compose them.

Layer rule: auth/ imports stdlib, third-party libraries, core/ and mail/
(service.py only, for the Outbox). It does NOT import from api/.
api/ imports from auth/, not the other way around.
"""
