from django.contrib import admin

from core.models import LocalEntry


@admin.register(LocalEntry)
class LocalEntryAdmin(admin.ModelAdmin):
    list_display = ("key", "saved_at")
    search_fields = ("key",)
    readonly_fields = ("saved_at",)
