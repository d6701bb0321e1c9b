"""auth/ -- Authentication, session lifecycle, permissions and audit log.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/ or questionnaire/.
api/ imports from auth/, not the other way around.
"""
