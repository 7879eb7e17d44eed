# binary_mlm/errors.py
"""
Exceptions raised by the commission engine.
"""


class MLMError(Exception):
    """Base class for engine errors."""


class StoreError(MLMError):
    """Read or write against the document store failed."""


class DocumentNotFound(StoreError):
    def __init__(self, path: str):
        super().__init__(f"Document {path} not found")
        self.path = path


class DocumentExists(StoreError):
    def __init__(self, path: str):
        super().__init__(f"Document {path} already exists")
        self.path = path


class TransactionConflict(StoreError):
    """Optimistic transaction kept losing the compare-and-set race."""


class ConfigurationMissing(MLMError):
    def __init__(self, tenantId: str, what: str = "MLM config"):
        super().__init__(f"{what} not found for tenant {tenantId}")
        self.tenantId = tenantId
