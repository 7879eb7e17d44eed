# models/document.py
"""
Document model - one row per document of the key-path document store.
"""
from sqlalchemy import Column, Integer, String, JSON
from models.base import Base, AuditMixin


class Document(Base, AuditMixin):
    __tablename__ = 'documents'

    # Full key path: "tenants/acme/users/u1/binaryTree/main"
    path = Column(String, primary_key=True)

    # Parent collection path and document id: "tenants/acme/users/u1/binaryTree", "main"
    collection = Column(String, nullable=False, index=True)
    docId = Column(String, nullable=False)

    data = Column(JSON, nullable=False, default=dict)

    # Incremented on every write, used for compare-and-set
    version = Column(Integer, nullable=False, default=1)

    # Note: createdAt, updatedAt - от AuditMixin

    def __repr__(self):
        return f"<Document(path={self.path}, version={self.version})>"
