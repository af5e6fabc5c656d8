import os
from fractions import Fraction
from pathlib import Path

import pytest
from PIL import Image

from api import stages
from api.errors import PreconditionError, TranscodeError, ValidationError
from api.models import Artifact, Job
from api.stages import SegmentEdit, settled_stage
from api.transcode import VideoInfo

SRT = "1\n00:00:00,000 --> 00:00:01,000\nHello\n"


@pytest.fixture()
def retrieved(sequencer, job):
    sequencer.retrieve_source(job)
    job.refresh_from_db()
    return job


@pytest.fixture()
def segmented(sequencer, retrieved):
    sequencer.remove_segments(retrieved, SegmentEdit(copy=True))
    retrieved.refresh_from_db()
    return retrieved


def _live_files(root):
    return sorted(p.name for p in Path(root).iterdir())


class TestRetrieve:
    def test_sets_source_and_stage(self, sequencer, job, source_file):
        result = sequencer.retrieve_source(job)
        job.refresh_from_db()
        assert job.stage == Job.Stage.RETRIEVED
        assert job.status == Job.Status.SUCCESS
        assert result["success"] is True
        assert result["size_bytes"] == source_file.stat().st_size
        assert Path(job.source_artifact.path).is_file()

    def test_reentry_replaces_source_and_drops_downstream(self, sequencer, segmented, temp_root):
        old_source = segmented.source_artifact.path
        old_working = segmented.working_artifact.path
        sequencer.retrieve_source(segmented)
        segmented.refresh_from_db()
        assert segmented.source_artifact.path != old_source
        assert not os.path.exists(old_source)
        assert not os.path.exists(old_working)
        assert segmented.working_artifact is None
        assert segmented.stage == Job.Stage.RETRIEVED
        assert _live_files(temp_root) == [Path(segmented.source_artifact.path).name]

    def test_missing_reference_is_a_validation_error(self, sequencer, db):
        job = Job.objects.create()
        with pytest.raises(ValidationError):
            sequencer.retrieve_source(job)
        job.refresh_from_db()
        assert job.stage == Job.Stage.FAILED
        assert job.failed_stage == stages.RETRIEVE
        assert job.result["error"]["error"] == "invalid_request"


class TestExtractAudio:
    def test_produces_mono_16k_pcm_and_leaves_other_slots(self, sequencer, retrieved, invoker):
        result = sequencer.extract_audio(retrieved)
        retrieved.refresh_from_db()
        op = invoker.operations[-1]
        assert op.output_options == ["-vn", "-acodec", "pcm_s16le", "-ar", "16000", "-ac", "1"]
        assert retrieved.audio_artifact.kind == Artifact.Kind.AUDIO
        assert retrieved.audio_artifact_id != retrieved.source_artifact_id
        assert retrieved.working_artifact is None and retrieved.final_artifact is None
        assert retrieved.stage == Job.Stage.AUDIO_EXTRACTED
        assert result["sample_rate"] == 16000 and result["channels"] == 1

    def test_does_not_rewind_a_later_stage(self, sequencer, segmented):
        sequencer.extract_audio(segmented)
        segmented.refresh_from_db()
        assert segmented.stage == Job.Stage.SEGMENTS_REMOVED

    def test_reentry_releases_previous_audio(self, sequencer, retrieved, temp_root):
        sequencer.extract_audio(retrieved)
        retrieved.refresh_from_db()
        first = retrieved.audio_artifact.path
        sequencer.extract_audio(retrieved)
        retrieved.refresh_from_db()
        assert retrieved.audio_artifact.path != first
        assert not os.path.exists(first)
        assert Artifact.objects.filter(job=retrieved, kind=Artifact.Kind.AUDIO).count() == 1

    def test_requires_source(self, sequencer, job):
        with pytest.raises(PreconditionError):
            sequencer.extract_audio(job)


class TestRemoveSegments:
    def test_copy_keeps_bytes_and_creates_new_identity(self, sequencer, retrieved, invoker):
        before = len(invoker.operations)
        result = sequencer.remove_segments(retrieved, SegmentEdit(copy=True))
        retrieved.refresh_from_db()
        assert len(invoker.operations) == before
        assert retrieved.working_artifact.size_bytes == retrieved.source_artifact.size_bytes
        assert retrieved.working_artifact.path != retrieved.source_artifact.path
        assert retrieved.stage == Job.Stage.SEGMENTS_REMOVED
        assert result["copied"] is True

    def test_filter_graph_is_mapped(self, sequencer, retrieved, invoker):
        edit = SegmentEdit.from_params({
            "filter_graph": "[0:v]select='not(between(t,1,2))',setpts=N/FRAME_RATE/TB[outv];"
                            "[0:a]aselect='not(between(t,1,2))',asetpts=N/SR/TB[outa]",
            "output_pads": {"video": "outv", "audio": "outa"},
        })
        sequencer.remove_segments(retrieved, edit)
        cmd = invoker.operations[-1].build_args("ffmpeg")
        assert "-filter_complex" in cmd
        assert cmd.count("-map") == 2
        assert "-threads" in cmd

    def test_simple_filters_from_request(self, sequencer, retrieved, invoker):
        edit = SegmentEdit.from_params({"video_filter": "null", "audio_filter": "volume=0.5"})
        sequencer.remove_segments(retrieved, edit)
        op = invoker.operations[-1]
        assert op.video_filter is None and op.audio_filter == "volume=0.5"

    def test_identity_filters_mean_copy(self):
        assert SegmentEdit.from_params({"video_filter": "null", "audio_filter": "anull"}).copy
        assert SegmentEdit.from_params({"filter_graph": None}).copy

    @pytest.mark.parametrize("params", [
        {},
        {"filter_graph": ""},
        {"filter_graph": "[0:v]null[outv]"},
        {"filter_graph": "[0:v]null[outv]", "output_pads": {"video": "missing"}},
        {"video_filter": ""},
    ])
    def test_malformed_requests_never_silently_copy(self, params):
        with pytest.raises(ValidationError):
            SegmentEdit.from_params(params)

    def test_failure_marks_failed_and_cleans_partial_output(self, sequencer, retrieved, invoker, temp_root):
        source = retrieved.source_artifact.path
        invoker.fail_with = TranscodeError("ffmpeg exited with status 1", exit_code=1, diagnostic="boom")
        edit = SegmentEdit(video_filter="select='gt(t,1)'")
        with pytest.raises(TranscodeError):
            sequencer.remove_segments(retrieved, edit)
        retrieved.refresh_from_db()
        assert retrieved.stage == Job.Stage.FAILED
        assert retrieved.failed_stage == stages.REMOVE_SEGMENTS
        assert retrieved.result["success"] is False
        assert retrieved.result["error"]["diagnostic"] == "boom"
        # earlier stage untouched, partial output gone
        assert retrieved.source_artifact.path == source
        assert _live_files(temp_root) == [Path(source).name]

    def test_rerun_after_composite_drops_stale_final(self, sequencer, segmented):
        sequencer.composite(segmented, SRT)
        segmented.refresh_from_db()
        final = segmented.final_artifact.path
        sequencer.remove_segments(segmented, SegmentEdit(copy=True))
        segmented.refresh_from_db()
        assert segmented.final_artifact is None
        assert not os.path.exists(final)
        assert segmented.stage == Job.Stage.SEGMENTS_REMOVED


class TestComposite:
    def test_subtitles_only(self, sequencer, segmented, invoker, temp_root):
        result = sequencer.composite(segmented, SRT)
        segmented.refresh_from_db()
        assert segmented.stage == Job.Stage.COMPOSITED
        assert segmented.final_ready
        assert result["has_subtitles"] is True and result["has_music"] is False
        graph = invoker.operations[-1].filter_graph
        assert "subtitles=filename=" in graph and "force_style=" in graph
        assert "amix" not in graph
        # the transient subtitle file is gone once the stage finished
        assert not any(name.endswith(".srt") for name in _live_files(temp_root))
        assert segmented.working_artifact is not None

    def test_music_is_mixed_under_primary_audio(self, sequencer, segmented, invoker, settings, temp_root):
        (Path(settings.MUSIC_LIBRARY_DIR) / "calm.mp3").write_bytes(b"ID3music")
        result = sequencer.composite(segmented, SRT, music="calm.mp3")
        op = invoker.operations[-1]
        assert result["has_music"] is True
        assert f"volume={stages.PRIMARY_VOLUME}" in op.filter_graph
        assert f"volume={stages.MUSIC_VOLUME}" in op.filter_graph
        assert "amix=inputs=2:duration=first" in op.filter_graph
        assert op.output_pads == {"video": "outv", "audio": "outa"}
        assert len(op.inputs) == 2
        # library tracks are referenced, never deleted
        assert (Path(settings.MUSIC_LIBRARY_DIR) / "calm.mp3").exists()

    def test_downloaded_music_is_cleaned_up(self, sequencer, segmented, tmp_path, temp_root):
        track = tmp_path / "track.mp3"
        track.write_bytes(b"ID3music")
        sequencer.client.files["https://example.com/track.mp3"] = track
        sequencer.composite(segmented, SRT, music="https://example.com/track.mp3")
        segmented.refresh_from_db()
        assert not Artifact.objects.filter(job=segmented, kind=Artifact.Kind.MUSIC).exists()
        assert not any(name.endswith("_music.mp3") for name in _live_files(temp_root))

    def test_unknown_library_track(self, sequencer, segmented):
        with pytest.raises(ValidationError):
            sequencer.composite(segmented, SRT, music="nope.mp3")

    def test_subtitle_text_is_required(self, sequencer, segmented):
        with pytest.raises(ValidationError):
            sequencer.composite(segmented, "  ")
        segmented.refresh_from_db()
        assert segmented.final_artifact is None
        assert segmented.stage == Job.Stage.FAILED

    def test_working_artifact_is_reverified_on_disk(self, sequencer, segmented):
        os.unlink(segmented.working_artifact.path)
        with pytest.raises(PreconditionError):
            sequencer.composite(segmented, SRT)
        segmented.refresh_from_db()
        assert segmented.final_artifact is None

    def test_requires_segment_stage(self, sequencer, retrieved):
        with pytest.raises(PreconditionError):
            sequencer.composite(retrieved, SRT)

    def test_failure_keeps_working_and_removes_aux(self, sequencer, segmented, invoker, temp_root):
        working = segmented.working_artifact.path
        invoker.fail_with = TranscodeError("ffmpeg exited with status 1", exit_code=1)
        with pytest.raises(TranscodeError):
            sequencer.composite(segmented, SRT)
        segmented.refresh_from_db()
        assert segmented.working_artifact.path == working
        assert segmented.final_artifact is None
        assert not segmented.final_ready
        assert sorted(_live_files(temp_root)) == sorted(
            Path(a.path).name for a in (segmented.source_artifact, segmented.working_artifact)
        )

    def test_retry_after_failure(self, sequencer, segmented, invoker):
        invoker.fail_with = TranscodeError("boom", exit_code=1)
        with pytest.raises(TranscodeError):
            sequencer.composite(segmented, SRT)
        invoker.fail_with = None
        sequencer.composite(segmented, SRT)
        segmented.refresh_from_db()
        assert segmented.stage == Job.Stage.COMPOSITED


@pytest.fixture()
def still(tmp_path):
    p = tmp_path / "thumb.jpg"
    Image.new("RGB", (64, 48), (200, 30, 30)).save(p, format="JPEG")
    return p


class TestThumbnailIntro:
    def test_intro_matches_probed_geometry(self, sequencer, segmented, invoker, still):
        sequencer.client.files["https://example.com/thumb.jpg"] = still
        result = sequencer.add_thumbnail_intro(segmented, "https://example.com/thumb.jpg", 0.3)
        segmented.refresh_from_db()
        op = invoker.operations[-1]
        assert "scale=270:480:force_original_aspect_ratio=decrease" in op.filter_graph
        assert "pad=270:480" in op.filter_graph
        assert "fps=30," in op.filter_graph
        assert "concat=n=2:v=1:a=0[outv]" in op.filter_graph
        assert "adelay=delays=300:all=1[outa]" in op.filter_graph
        assert op.inputs[0].options == ("-loop", "1", "-framerate", "30", "-t", "0.3")
        assert op.inputs[1].path == Path(segmented.working_artifact.path)
        assert segmented.stage == Job.Stage.COMPOSITED
        assert (result["width"], result["height"], result["fps"]) == (270, 480, 30.0)

    def test_intro_keeps_exact_ntsc_rate(self, sequencer, segmented, invoker, still, monkeypatch):
        ntsc = VideoInfo(width=270, height=480, fps=30000 / 1001, has_audio=True, duration_seconds=2.0,
                         rate=Fraction(30000, 1001))
        monkeypatch.setattr("api.stages.probe_video", lambda path, inv=None: ntsc)
        sequencer.client.files["https://example.com/thumb.jpg"] = still
        sequencer.add_thumbnail_intro(segmented, "https://example.com/thumb.jpg", 0.5)
        op = invoker.operations[-1]
        assert op.filter_graph.count("fps=30000/1001,") == 2
        assert op.inputs[0].options[2:4] == ("-framerate", "30000/1001")
        assert op.output_options[op.output_options.index("-r") + 1] == "30000/1001"

    def test_intro_before_music_and_subtitles(self, sequencer, segmented, invoker, still, temp_root):
        sequencer.client.files["https://example.com/thumb.jpg"] = still
        result = sequencer.composite(segmented, SRT, thumbnail="https://example.com/thumb.jpg",
                                     thumbnail_duration=0.3)
        segmented.refresh_from_db()
        intro_op, final_op = invoker.operations[-2:]
        assert "concat" in intro_op.filter_graph
        assert final_op.inputs[0].path == Path(intro_op.output)
        assert result["has_thumbnail"] is True
        # the intermediate intro video does not outlive the stage
        assert not Path(intro_op.output).exists()
        assert Path(segmented.final_artifact.path).exists()

    def test_duration_bounds(self, sequencer, segmented, still):
        sequencer.client.files["https://example.com/thumb.jpg"] = still
        with pytest.raises(ValidationError):
            sequencer.add_thumbnail_intro(segmented, "https://example.com/thumb.jpg", 0)

    def test_unreadable_image(self, sequencer, segmented, tmp_path):
        bogus = tmp_path / "thumb.jpg"
        bogus.write_bytes(b"not an image")
        sequencer.client.files["https://example.com/thumb.jpg"] = bogus
        with pytest.raises(ValidationError):
            sequencer.add_thumbnail_intro(segmented, "https://example.com/thumb.jpg", 0.3)


def test_settled_stage_follows_slots(sequencer, segmented):
    assert settled_stage(segmented) == Job.Stage.SEGMENTS_REMOVED
    sequencer.composite(segmented, SRT)
    segmented.refresh_from_db()
    assert settled_stage(segmented) == Job.Stage.COMPOSITED
