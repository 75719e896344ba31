"""auth/ -- Device token handling for the MDM backend.

Layer rule: auth/tokens.py imports only stdlib and core/config.
auth/dependencies.py is the FastAPI glue that turns request headers into an
authenticated Device; api/ imports from auth/, not the other way around.
"""
