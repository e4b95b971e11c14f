# core/urls.py
from django.urls import path

from core import api

app_name = "core"

urlpatterns = [
    path(
        "numbers/",
        api.document_counters,
        name="document_counters",
    ),
    path(
        "numbers/<str:kind>/",
        api.next_document_number,
        name="next_document_number",
    ),
]
