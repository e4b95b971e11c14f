# offline/urls.py
from django.urls import path

from offline import api

app_name = "offline"

urlpatterns = [
    path("status/", api.queue_status, name="queue_status"),
    path("sync/", api.queue_sync, name="queue_sync"),
]
