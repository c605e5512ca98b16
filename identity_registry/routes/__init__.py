"""
Identity Registry API Routes Package
Provides identity, verification and admin endpoints.
"""

from identity_registry.routes import identities, verifications, admin

__all__ = ['identities', 'verifications', 'admin']
