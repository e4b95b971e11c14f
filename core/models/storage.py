# core/models/storage.py
from django.db import models
from django.utils.translation import gettext_lazy as _


class LocalEntry(models.Model):
    """
    One key/value pair of the durable local store.

    Example rows:
    - key: "last_sale_number"                 value: "42"
    - key: "cornerstone_pending_operations"   value: {"data": [...], "timestamp": "..."}
    """

    key = models.CharField(
        max_length=191,
        unique=True,
        verbose_name=_("clé"),
    )
    value = models.JSONField(
        null=True,
        blank=True,
        verbose_name=_("valeur"),
    )
    saved_at = models.DateTimeField(
        auto_now=True,
        verbose_name=_("enregistré le"),
    )

    class Meta:
        verbose_name = _("entrée locale")
        verbose_name_plural = _("entrées locales")
        ordering = ["key"]

    def __str__(self) -> str:
        return self.key
