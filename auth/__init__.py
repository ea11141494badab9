"""auth/ -- Authentication and session security core for authcore.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/. api/ imports from auth/, not the other way
around; auth/dependencies.py is the only module that knows about FastAPI.
"""
