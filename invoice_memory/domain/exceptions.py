class InvoiceMemoryError(Exception):
    """Base exception for invoice memory errors"""
    pass

class StoreUnavailable(InvoiceMemoryError):
    """Raised when the backing store can not be read or written"""
    pass

class PatternWriteError(StoreUnavailable):
    """Raised when a pattern or record could not be persisted"""
    pass

class InvalidFieldPath(InvoiceMemoryError, ValueError):
    """Raised when a dotted field path does not name a known invoice field"""
    pass
