# models/__init__.py
"""
Database models for the commission engine.
"""

# Base and mixins
from models.base import Base, AuditMixin

# Document store
from models.document import Document

__all__ = [
    # Base
    'Base',
    'AuditMixin',

    # Store
    'Document',
]
