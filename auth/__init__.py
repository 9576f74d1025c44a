"""auth/ -- Authentication, authorization and passkey package for Realm Admin.

Layer rule: auth/ imports only stdlib + third-party libraries, core/ and cache/.
It does NOT import from api/ or audit/.
api/ imports from auth/, not the other way around.
"""
