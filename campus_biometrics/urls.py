# campus_biometrics/urls.py
from django.urls import include, path

urlpatterns = [
    path("api/", include("verification.urls")),
]
