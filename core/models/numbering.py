# core/models/numbering.py
from django.db import models
from django.utils.translation import gettext_lazy as _


class DocumentKind(models.TextChoices):
    """
    Business documents that carry their own number sequence.

    Each kind maps to a fixed prefix, e.g. a sale is numbered
    "VT" + yymm + 4-digit sequence → VT25070043.
    """

    PRODUCTION_ORDER = "production_order", _("Ordre de production")
    DELIVERY = "delivery", _("Livraison")
    SALE = "sale", _("Vente")
    QUOTE = "quote", _("Devis")
    INVOICE = "invoice", _("Facture")

    @property
    def prefix(self) -> str:
        return DOCUMENT_PREFIXES[self]

    @property
    def counter_key(self) -> str:
        # ex: "last_production_order_number"
        return f"last_{self.value}_number"


DOCUMENT_PREFIXES = {
    DocumentKind.PRODUCTION_ORDER: "OP",
    DocumentKind.DELIVERY: "LV",
    DocumentKind.SALE: "VT",
    DocumentKind.QUOTE: "DV",
    DocumentKind.INVOICE: "FC",
}
