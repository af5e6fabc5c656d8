from rest_framework import serializers

from .errors import ValidationError as PipelineValidationError
from .models import Artifact, Job
from .stages import MAX_THUMBNAIL_SECONDS, SegmentEdit


class ArtifactSerializer(serializers.ModelSerializer):
    class Meta:
        model = Artifact
        fields = ["id", "kind", "size_bytes", "created_at"]


class JobSerializer(serializers.ModelSerializer):
    artifacts = ArtifactSerializer(many=True, read_only=True)
    source_artifact = ArtifactSerializer(read_only=True)
    audio_artifact = ArtifactSerializer(read_only=True)
    working_artifact = ArtifactSerializer(read_only=True)
    final_artifact = serializers.SerializerMethodField()

    class Meta:
        model = Job
        fields = [
            "id",
            "source_ref",
            "stage",
            "failed_stage",
            "status",
            "progress",
            "result",
            "error",
            "source_artifact",
            "audio_artifact",
            "working_artifact",
            "final_artifact",
            "artifacts",
            "created_at",
            "updated_at",
        ]

    def get_final_artifact(self, job):
        # Only a composited job exposes its final video
        if not job.final_ready:
            return None
        return ArtifactSerializer(job.final_artifact).data


class JobCreateSerializer(serializers.Serializer):
    source = serializers.CharField(required=False, allow_blank=False, max_length=1024)
    file = serializers.FileField(required=False)

    def validate(self, attrs):
        if bool(attrs.get("source")) == bool(attrs.get("file")):
            raise serializers.ValidationError("Provide exactly one of 'source' or 'file'.")
        return attrs


class RetrieveSerializer(serializers.Serializer):
    source = serializers.CharField(required=False, allow_blank=False, max_length=1024)


class RemoveSegmentsSerializer(serializers.Serializer):
    """
    Either {"filter_graph": "<graph>" | null, "output_pads": {...}}
    or the simple pair {"video_filter": ..., "audio_filter": ...}.
    """

    filter_graph = serializers.CharField(required=False, allow_null=True, allow_blank=True, trim_whitespace=False)
    output_pads = serializers.DictField(child=serializers.CharField(), required=False)
    video_filter = serializers.CharField(required=False, allow_null=True, allow_blank=True)
    audio_filter = serializers.CharField(required=False, allow_null=True, allow_blank=True)

    def validate(self, attrs):
        try:
            edit = SegmentEdit.from_params(attrs)
        except PipelineValidationError as exc:
            raise serializers.ValidationError(str(exc))
        attrs["edit"] = edit
        return attrs


class CompositeSerializer(serializers.Serializer):
    subtitle_text = serializers.CharField(trim_whitespace=False)
    music = serializers.CharField(required=False, allow_null=True, allow_blank=True, max_length=1024)
    thumbnail = serializers.CharField(required=False, allow_null=True, allow_blank=True, max_length=1024)
    thumbnail_duration = serializers.FloatField(
        required=False, allow_null=True, min_value=0.01, max_value=MAX_THUMBNAIL_SECONDS
    )

    def validate(self, attrs):
        if attrs.get("thumbnail") and attrs.get("thumbnail_duration") is None:
            raise serializers.ValidationError("thumbnail_duration is required with a thumbnail.")
        return attrs


class ThumbnailIntroSerializer(serializers.Serializer):
    thumbnail = serializers.CharField(max_length=1024)
    duration = serializers.FloatField(min_value=0.01, max_value=MAX_THUMBNAIL_SECONDS)


class PresignRequestSerializer(serializers.Serializer):
    filename = serializers.CharField()
    content_type = serializers.CharField(required=False, allow_blank=True)


class PresignResponseSerializer(serializers.Serializer):
    key = serializers.CharField()
    url = serializers.URLField()
    headers = serializers.DictField(child=serializers.CharField(), required=False)
