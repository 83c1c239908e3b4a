"""auth/ -- Password reset, session tokens, and the session gate for portalauth.

Layer rule: auth/ imports stdlib, third-party libraries, core/, store/ and
cache/. It does NOT import from api/.
api/ imports from auth/, not the other way around.
"""
