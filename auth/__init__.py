"""auth/ -- Authentication and authorization package for TravelAuth.

Credential store, token service, RBAC, tenant resolution and account
recovery. Everything here is framework-agnostic except dependencies.py,
which adapts the package to FastAPI's Depends().

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/ or gateway/.
api/ and gateway/ import from auth/, not the other way around.
"""
