from .numbering import DOCUMENT_PREFIXES, DocumentKind
from .storage import LocalEntry

__all__ = [
    # Numérotation
    "DocumentKind",
    "DOCUMENT_PREFIXES",
    # Stockage local
    "LocalEntry",
]
