from pathlib import Path
from unittest.mock import Mock

import pandas as pd
import pytest

from conftest import decode, make_jpeg, make_result
from errors import ExtractionError, InferenceError, ReassemblyError
from inference import parse_response
from video_pipeline import (
    FrameResult,
    JobStage,
    PipelineConfig,
    VideoJob,
    VideoPipeline,
    compute_statistics,
)


def _extractor(n_frames):
    def _extract(video_path: Path, frames_dir: Path, fps: float):
        frames_dir.mkdir(parents=True, exist_ok=True)
        paths = []
        for i in range(n_frames):
            p = frames_dir / f"frame_{i + 1:04d}.jpg"
            p.write_bytes(make_jpeg(value=40 + i))
            paths.append(p)
        return paths
    return _extract


def _assembler(calls):
    def _assemble(frames_dir: Path, fps: float, output_path: Path):
        calls.append(sorted(p.name for p in frames_dir.glob("*.jpg")))
        output_path.write_bytes(b"video")
        return output_path
    return _assemble


def _client(*outcomes):
    client = Mock()
    client.infer.side_effect = list(outcomes)
    return client


def _pipeline(client, n_frames=3, assembled=None, **kw):
    sleep = Mock()
    pipe = VideoPipeline(
        client, PipelineConfig(**kw),
        extractor=_extractor(n_frames),
        assembler=_assembler(assembled if assembled is not None else []),
        sleep=sleep,
    )
    return pipe, sleep


def test_failed_frame_keeps_its_position_and_is_excluded_from_statistics(tmp_path) -> None:
    client = _client(
        make_result((10, 10), (20, 20)),
        InferenceError("timed out"),
        make_result((30, 30), (40, 40), (50, 50), (60, 60)),
    )
    assembled = []
    pipe, _ = _pipeline(client, assembled=assembled)

    result = pipe.process_video(tmp_path / "in.mp4", tmp_path / "out")

    assert [f.frame_number for f in result.frames] == [0, 1, 2]
    assert [f.failed for f in result.frames] == [False, True, False]
    assert [f.count for f in result.frames] == [2, 0, 4]
    assert result.frames[1].error == "Processing failed"
    assert result.valid_frames == 2

    stats = result.statistics
    assert stats.total_people == 6
    assert stats.average_people == 3.0
    assert stats.max_people == 4
    assert stats.duration == "1.5s"

    assert assembled == [["frame_0001.jpg", "frame_0002.jpg", "frame_0003.jpg"]]
    assert result.output_video.read_bytes() == b"video"


def test_error_frame_is_rendered_with_panel(tmp_path) -> None:
    pipe, _ = _pipeline(_client(InferenceError("down")), n_frames=1)

    result = pipe.process_video(tmp_path / "in.mp4", tmp_path / "out")

    frame = result.frames[0]
    assert frame.failed
    assert frame.timestamp_label == "0.0s"
    assert decode(frame.annotated_path.read_bytes()).shape[1] == 320 + 300


def test_frames_are_processed_in_order_with_delay_after_successes() -> None:
    seen = []

    def infer(frame, confidence=None):
        seen.append(frame)
        if len(seen) == 2:
            raise InferenceError("503")
        return make_result((5, 5))

    client = Mock()
    client.infer.side_effect = infer
    frames = [make_jpeg(value=v) for v in (10, 20, 30, 40)]
    pipe, sleep = _pipeline(client, frame_delay_seconds=0.3)

    job = VideoJob(ordered_frames=frames, frame_rate_hz=2.0)
    results = pipe.process_frames(job)

    assert seen == frames
    assert [r.timestamp_label for r in results] == ["0.0s", "0.5s", "1.0s", "1.5s"]
    assert job.stage is JobStage.PROCESSING
    # delay after frames 1, 3 and 4; not after the failure
    assert sleep.call_count == 3
    sleep.assert_called_with(0.3)


def test_malformed_service_response_only_affects_its_own_frame() -> None:
    responses = iter([
        {"outputs": [{"count_objects": 2, "predictions": {"predictions": [{"x": 5, "y": 5}]}}]},
        {"outputs": [{"count_objects": float("inf")}]},
        {"outputs": [{"count_objects": 1}]},
    ])

    def infer(frame, confidence=None):
        return parse_response(next(responses))

    client = Mock()
    client.infer.side_effect = infer
    pipe, _ = _pipeline(client)

    results = pipe.process_frames(VideoJob(ordered_frames=[make_jpeg()] * 3, frame_rate_hz=2.0))

    assert [r.count for r in results] == [2, 0, 1]
    assert not any(r.failed for r in results)


def test_unexpected_client_error_is_recorded_as_failed_frame() -> None:
    client = _client(make_result((1, 1)), ValueError("cannot convert float NaN to integer"),
                     make_result((2, 2), (3, 3)))
    pipe, _ = _pipeline(client)

    results = pipe.process_frames(VideoJob(ordered_frames=[make_jpeg()] * 3, frame_rate_hz=2.0))

    assert len(results) == 3
    assert [r.failed for r in results] == [False, True, False]
    assert [r.count for r in results] == [1, 0, 2]
    assert results[1].error == "Processing failed"


def test_inference_uses_configured_confidence() -> None:
    client = _client(make_result())
    pipe, _ = _pipeline(client, confidence=0.3)

    pipe.process_frames(VideoJob(ordered_frames=[make_jpeg()], frame_rate_hz=2.0))

    assert client.infer.call_args.kwargs["confidence"] == 0.3


def test_extraction_failure_aborts_before_inference(tmp_path) -> None:
    client = _client()

    def broken(video_path, frames_dir, fps):
        raise ExtractionError("ffmpeg exited with 1")

    pipe = VideoPipeline(client, extractor=broken, assembler=_assembler([]), sleep=Mock())

    with pytest.raises(ExtractionError):
        pipe.process_video(tmp_path / "in.mp4", tmp_path / "out")
    client.infer.assert_not_called()


def test_reassembly_failure_aborts_job(tmp_path) -> None:
    def broken(frames_dir, fps, output_path):
        raise ReassemblyError("encoder crashed")

    pipe = VideoPipeline(_client(make_result()), extractor=_extractor(1),
                         assembler=broken, sleep=Mock())

    with pytest.raises(ReassemblyError):
        pipe.process_video(tmp_path / "in.mp4", tmp_path / "out")


def test_progress_reports_every_stage(tmp_path) -> None:
    stages = []
    pipe, _ = _pipeline(_client(make_result(), make_result()), n_frames=2)

    pipe.process_video(tmp_path / "in.mp4", tmp_path / "out",
                       progress_callback=lambda stage, cur, tot, msg: stages.append(stage))

    assert stages[0] is JobStage.EXTRACTING
    assert stages.count(JobStage.PROCESSING) == 2
    assert stages[-2:] == [JobStage.REASSEMBLING, JobStage.COMPLETED]


def test_csv_lists_every_frame(tmp_path) -> None:
    pipe, _ = _pipeline(_client(make_result((1, 1)), InferenceError("x"), make_result()))

    result = pipe.process_video(tmp_path / "in.mp4", tmp_path / "out")

    df = pd.read_csv(result.csv_path)
    assert list(df["frame_number"]) == [0, 1, 2]
    assert list(df["failed"]) == [False, True, False]


def test_statistics_with_no_valid_frames() -> None:
    frames = [FrameResult(frame_number=i, timestamp_label="", detection_result=None,
                          annotated_bytes=b"", failed=True) for i in range(3)]

    stats = compute_statistics(frames, frame_rate_hz=2.0)

    assert (stats.total_people, stats.average_people, stats.max_people) == (0, 0.0, 0)
    assert stats.duration == "1.5s"


def test_statistics_for_empty_sequence() -> None:
    stats = compute_statistics([], frame_rate_hz=2.0)

    assert stats.to_dict() == {"totalPeople": 0, "averagePeople": 0.0,
                               "maxPeople": 0, "duration": "0.0s"}
