from django.urls import path
from .views import (
    AudioDownloadView,
    CleanupView,
    CompositeView,
    ExtractAudioView,
    FinalDownloadView,
    HealthView,
    JobCreateView,
    JobDetailView,
    PresignUploadView,
    RemoveSegmentsView,
    RetrieveView,
    ThumbnailIntroView,
)

urlpatterns = [
    path("health/", HealthView.as_view(), name="health"),
    path("uploads/presign/", PresignUploadView.as_view(), name="uploads_presign"),
    path("jobs/", JobCreateView.as_view(), name="job_create"),
    path("jobs/<uuid:job_id>/", JobDetailView.as_view(), name="job_detail"),
    path("jobs/<uuid:job_id>/retrieve/", RetrieveView.as_view(), name="job_retrieve"),
    path("jobs/<uuid:job_id>/extract-audio/", ExtractAudioView.as_view(), name="job_extract_audio"),
    path("jobs/<uuid:job_id>/remove-segments/", RemoveSegmentsView.as_view(), name="job_remove_segments"),
    path("jobs/<uuid:job_id>/composite/", CompositeView.as_view(), name="job_composite"),
    path("jobs/<uuid:job_id>/thumbnail-intro/", ThumbnailIntroView.as_view(), name="job_thumbnail_intro"),
    path("jobs/<uuid:job_id>/audio/", AudioDownloadView.as_view(), name="job_audio"),
    path("jobs/<uuid:job_id>/final/", FinalDownloadView.as_view(), name="job_final"),
    path("cleanup/", CleanupView.as_view(), name="cleanup"),
]
