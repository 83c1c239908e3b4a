"""store/ -- Key/value store abstraction for reset tokens and rate-limit counters.

Layer rule: store/ imports only stdlib, third-party libraries, core/ and
auth/models. It does NOT import from api/ or the auth services.
"""
