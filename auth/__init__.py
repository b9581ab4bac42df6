"""auth/ -- Dual-mode authentication and tenant-scoped RBAC core.

Layer rule: auth/ imports only stdlib, third-party libraries, core/ and cache/.
It does NOT import from api/ or web/. api/ and web/ import from auth/, not the
other way around. auth/dependencies.py is the one module allowed to import
fastapi, because it is the request-facing seam of the package.
"""
