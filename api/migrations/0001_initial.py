import uuid

import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Job",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("source_ref", models.CharField(blank=True, default="", max_length=1024)),
                (
                    "stage",
                    models.CharField(
                        choices=[
                            ("CREATED", "Created"),
                            ("RETRIEVED", "Retrieved"),
                            ("AUDIO_EXTRACTED", "Audio Extracted"),
                            ("SEGMENTS_REMOVED", "Segments Removed"),
                            ("COMPOSITED", "Composited"),
                            ("FAILED", "Failed"),
                        ],
                        default="CREATED",
                        max_length=32,
                    ),
                ),
                ("failed_stage", models.CharField(blank=True, default="", max_length=32)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("PENDING", "Pending"),
                            ("STARTED", "Started"),
                            ("SUCCESS", "Success"),
                            ("FAILURE", "Failure"),
                        ],
                        default="SUCCESS",
                        max_length=16,
                    ),
                ),
                ("progress", models.PositiveSmallIntegerField(default=0)),
                ("error", models.TextField(blank=True, default="")),
                ("result", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
        ),
        migrations.CreateModel(
            name="Artifact",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "kind",
                    models.CharField(
                        choices=[
                            ("video", "Video"),
                            ("audio", "Audio"),
                            ("subtitle", "Subtitle"),
                            ("music", "Music"),
                            ("thumbnail", "Thumbnail"),
                        ],
                        max_length=16,
                    ),
                ),
                ("path", models.CharField(max_length=1024, unique=True)),
                ("size_bytes", models.BigIntegerField()),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "job",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="artifacts",
                        to="api.job",
                    ),
                ),
            ],
        ),
        migrations.AddField(
            model_name="job",
            name="source_artifact",
            field=models.ForeignKey(
                blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="+", to="api.artifact"
            ),
        ),
        migrations.AddField(
            model_name="job",
            name="audio_artifact",
            field=models.ForeignKey(
                blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="+", to="api.artifact"
            ),
        ),
        migrations.AddField(
            model_name="job",
            name="working_artifact",
            field=models.ForeignKey(
                blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="+", to="api.artifact"
            ),
        ),
        migrations.AddField(
            model_name="job",
            name="final_artifact",
            field=models.ForeignKey(
                blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="+", to="api.artifact"
            ),
        ),
    ]
