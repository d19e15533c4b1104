# verification/urls.py
from django.urls import path

from .views import (
    FaceCloudVerifyView,
    FaceDescriptorsView,
    FaceExtractView,
    FaceHealthView,
    FaceVerifyView,
    FingerprintBatchVerifyView,
    FingerprintCompareView,
    FingerprintDuplicateView,
    FingerprintHealthView,
)

urlpatterns = [
    path("face/verify/", FaceVerifyView.as_view(), name="face_verify"),
    path("face/verify-cloud/", FaceCloudVerifyView.as_view(), name="face_verify_cloud"),
    path("face/extract/", FaceExtractView.as_view(), name="face_extract"),
    path("face/descriptors/", FaceDescriptorsView.as_view(), name="face_descriptors"),
    path("face/health/", FaceHealthView.as_view(), name="face_health"),
    path("fingerprint/compare/", FingerprintCompareView.as_view(), name="fingerprint_compare"),
    path("fingerprint/verify-batch/", FingerprintBatchVerifyView.as_view(), name="fingerprint_verify_batch"),
    path("fingerprint/check-duplicate/", FingerprintDuplicateView.as_view(), name="fingerprint_check_duplicate"),
    path("fingerprint/health-check/", FingerprintHealthView.as_view(), name="fingerprint_health"),
]
