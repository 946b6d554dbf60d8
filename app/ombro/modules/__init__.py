"""
Feature modules live under this package.

Each module owns its routes/models/service and reuses the platform pieces
(auth, RBAC, audit, storage, DB session) from app.ombro.
"""
