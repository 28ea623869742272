"""
Crowd Count — Batch Video Pipeline
==================================

Runs the per-frame logic over an uploaded video:

    pipeline = VideoPipeline(client, PipelineConfig())
    result   = pipeline.process_video(video_path, out_dir, progress_callback)

Extracting -> ProcessingFrames -> Reassembling -> Done | Failed

Frames are sampled with ffmpeg at ``frame_rate_hz``, sent to the inference
service strictly one after another (with ``frame_delay_seconds`` after each
successful call), annotated with the side-panel renderer and re-encoded
into a video at the same rate.  One frame's inference failure only marks
that frame; extraction or reassembly failure aborts the job.

This is blocking code; the API runs it under ``asyncio.to_thread``.
"""

from __future__ import annotations

import logging
import subprocess
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Sequence

import pandas as pd

from errors import ExtractionError, InferenceError, ReassemblyError
from inference import DetectionResult, InferenceClient
from renderer import DEFAULT_CONFIG, RenderConfig, render_panel

log = logging.getLogger(__name__)


# =====================================================================
#  CONFIGURATION
# =====================================================================

@dataclass
class PipelineConfig:

    # -- Sampling --
    frame_rate_hz: float = 2.0
    frame_delay_seconds: float = 0.3
    confidence: Optional[float] = 0.3

    # -- Files --
    frame_pattern: str = "frame_%04d.jpg"
    frames_subdir: str = "frames"
    annotated_subdir: str = "annotated_frames"
    output_name: str = "annotated.mp4"
    csv_name: str = "frames.csv"

    # -- Encoder --
    ffmpeg_bin: str = "ffmpeg"
    video_codec: str = "libx264"
    pix_fmt: str = "yuv420p"
    crf: int = 23
    preset: str = "medium"

    @property
    def frame_interval(self) -> float:
        return 1.0 / self.frame_rate_hz


class JobStage(str, Enum):
    PENDING = "pending"
    EXTRACTING = "extracting"
    PROCESSING = "processing"
    REASSEMBLING = "reassembling"
    COMPLETED = "completed"
    FAILED = "failed"


# =====================================================================
#  DATA MODEL
# =====================================================================

@dataclass
class FrameResult:
    frame_number: int
    timestamp_label: str
    detection_result: Optional[DetectionResult]
    annotated_bytes: bytes
    failed: bool = False
    error: Optional[str] = None
    source_path: Optional[Path] = None
    annotated_path: Optional[Path] = None

    @property
    def count(self) -> int:
        if self.failed or self.detection_result is None:
            return 0
        return self.detection_result.count

    @property
    def predictions(self) -> list[dict]:
        if self.detection_result is None:
            return []
        return self.detection_result.predictions


@dataclass
class VideoJob:
    ordered_frames: list[bytes]
    frame_rate_hz: float
    results: list[FrameResult] = field(default_factory=list)
    stage: JobStage = JobStage.PENDING


@dataclass
class VideoStatistics:
    total_people: int
    average_people: float
    max_people: int
    duration: str

    def to_dict(self) -> dict:
        return {
            "totalPeople": self.total_people,
            "averagePeople": self.average_people,
            "maxPeople": self.max_people,
            "duration": self.duration,
        }


@dataclass
class VideoJobResult:
    output_video: Path
    frames: list[FrameResult]
    statistics: VideoStatistics
    csv_path: Optional[Path] = None

    @property
    def valid_frames(self) -> int:
        return sum(1 for f in self.frames if not f.failed)


# =====================================================================
#  STATISTICS
# =====================================================================

FRAME_COLUMNS = ["frame_number", "timestamp", "count", "detections", "failed", "error"]


def frame_table(frames: Sequence[FrameResult]) -> pd.DataFrame:
    rows = [{
        "frame_number": f.frame_number,
        "timestamp": f.timestamp_label,
        "count": f.count,
        "detections": len(f.predictions),
        "failed": f.failed,
        "error": f.error or "",
    } for f in frames]
    return pd.DataFrame(rows, columns=FRAME_COLUMNS)


def compute_statistics(frames: Sequence[FrameResult], frame_rate_hz: float) -> VideoStatistics:
    """Aggregates over non-failed frames only; duration covers every frame."""
    df = frame_table(frames)
    valid = df[~df["failed"].astype(bool)]
    if valid.empty:
        total, avg, peak = 0, 0.0, 0
    else:
        total = int(valid["count"].sum())
        avg = round(total / len(valid), 1)
        peak = int(valid["count"].max())
    return VideoStatistics(
        total_people=total,
        average_people=avg,
        max_people=peak,
        duration=format_seconds(len(frames) * (1.0 / frame_rate_hz)),
    )


def format_seconds(seconds: float) -> str:
    return f"{seconds:.1f}s"


# =====================================================================
#  FFMPEG COLLABORATORS
# =====================================================================

def _run_ffmpeg(cmd: list[str], error_cls):
    log.debug("Running %s", " ".join(cmd))
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True)
    except OSError as e:
        raise error_cls(f"Cannot run {cmd[0]}: {e}") from e
    if proc.returncode != 0:
        tail = (proc.stderr or "").strip().splitlines()[-3:]
        raise error_cls(f"{cmd[0]} exited with {proc.returncode}: {' | '.join(tail)}")


class FfmpegFrameExtractor:
    """Split a video into still JPEGs at a fixed sampling rate."""

    def __init__(self, ffmpeg_bin: str = "ffmpeg", pattern: str = "frame_%04d.jpg"):
        self.ffmpeg_bin = ffmpeg_bin
        self.pattern = pattern

    def __call__(self, video_path: Path, frames_dir: Path, fps: float) -> list[Path]:
        frames_dir.mkdir(parents=True, exist_ok=True)
        _run_ffmpeg([
            self.ffmpeg_bin, "-nostdin", "-loglevel", "error", "-y",
            "-i", str(video_path),
            "-vf", f"fps={fps:g}",
            str(frames_dir / self.pattern),
        ], ExtractionError)
        frames = sorted(frames_dir.glob("*.jpg"))
        if not frames:
            raise ExtractionError(f"No frames extracted from {Path(video_path).name}")
        return frames


class FfmpegVideoAssembler:
    """Re-encode a numbered JPEG sequence into an H.264 video."""

    def __init__(self, cfg: PipelineConfig):
        self.cfg = cfg

    def __call__(self, frames_dir: Path, fps: float, output_path: Path) -> Path:
        cfg = self.cfg
        _run_ffmpeg([
            cfg.ffmpeg_bin, "-nostdin", "-loglevel", "error", "-y",
            "-framerate", f"{fps:g}",
            "-i", str(frames_dir / cfg.frame_pattern),
            # yuv420p needs even dimensions
            "-vf", "pad=ceil(iw/2)*2:ceil(ih/2)*2",
            "-c:v", cfg.video_codec,
            "-pix_fmt", cfg.pix_fmt,
            "-crf", str(cfg.crf),
            "-preset", cfg.preset,
            str(output_path),
        ], ReassemblyError)
        if not output_path.exists():
            raise ReassemblyError(f"Encoder produced no output at {output_path}")
        return output_path


# =====================================================================
#  MAIN CLASS
# =====================================================================

ProgressCallback = Callable[[JobStage, int, int, str], None]


class VideoPipeline:
    """Sequential per-frame inference + annotation over an extracted video.

    ``extractor`` and ``assembler`` default to the ffmpeg implementations and
    ``sleep`` to :func:`time.sleep`; all three are injectable so the frame
    loop can be driven without ffmpeg or real delays.
    """

    def __init__(
        self,
        client: InferenceClient,
        config: PipelineConfig | None = None,
        *,
        render_config: RenderConfig = DEFAULT_CONFIG,
        extractor: Callable[[Path, Path, float], list[Path]] | None = None,
        assembler: Callable[[Path, float, Path], Path] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.cfg = config or PipelineConfig()
        self.render_cfg = render_config
        self.extractor = extractor or FfmpegFrameExtractor(self.cfg.ffmpeg_bin, self.cfg.frame_pattern)
        self.assembler = assembler or FfmpegVideoAssembler(self.cfg)
        self._sleep = sleep

    # ------------------------------------------------------------------
    #  Public API
    # ------------------------------------------------------------------

    def process_video(
        self,
        video_path: str | Path,
        output_dir: str | Path,
        *,
        progress_callback: ProgressCallback | None = None,
    ) -> VideoJobResult:
        """Run extraction, per-frame processing and reassembly.

        Output layout under ``output_dir``::

            frames/              sampled source frames (frame_0001.jpg ...)
            annotated_frames/    one annotated JPEG per sampled frame
            annotated.mp4        re-encoded annotated video
            frames.csv           per-frame counts

        Annotated frames are always renamed to the contiguous
        ``frame_pattern`` sequence: the image2 demuxer stops at the first
        gap, so an error placeholder must occupy its slot rather than be
        skipped.

        Raises:
            ExtractionError, ReassemblyError: the job cannot complete.
        """
        cfg = self.cfg
        out = Path(output_dir)
        frames_dir = out / cfg.frames_subdir
        annotated_dir = out / cfg.annotated_subdir
        annotated_dir.mkdir(parents=True, exist_ok=True)

        def _cb(stage, cur, tot, msg):
            if progress_callback:
                progress_callback(stage, cur, tot, msg)

        _cb(JobStage.EXTRACTING, 0, 1, "Extracting frames")
        frame_paths = self.extractor(Path(video_path), frames_dir, cfg.frame_rate_hz)
        log.info("Extracted %d frame(s) from %s", len(frame_paths), Path(video_path).name)

        job = VideoJob(
            ordered_frames=[p.read_bytes() for p in frame_paths],
            frame_rate_hz=cfg.frame_rate_hz,
        )
        self.process_frames(job, progress_callback=progress_callback)

        for i, fr in enumerate(job.results):
            fr.source_path = frame_paths[i]
            fr.annotated_path = annotated_dir / (cfg.frame_pattern % (i + 1))
            fr.annotated_path.write_bytes(fr.annotated_bytes)

        job.stage = JobStage.REASSEMBLING
        _cb(JobStage.REASSEMBLING, 0, 1, "Encoding annotated video")
        output_video = self.assembler(annotated_dir, cfg.frame_rate_hz, out / cfg.output_name)
        log.info("Annotated video written to %s", output_video)

        stats = compute_statistics(job.results, cfg.frame_rate_hz)
        csv_path = out / cfg.csv_name
        frame_table(job.results).to_csv(csv_path, index=False)

        job.stage = JobStage.COMPLETED
        _cb(JobStage.COMPLETED, 1, 1, "Processing complete")
        return VideoJobResult(
            output_video=output_video, frames=job.results,
            statistics=stats, csv_path=csv_path,
        )

    def process_frames(self, job: VideoJob, *,
                       progress_callback: ProgressCallback | None = None) -> list[FrameResult]:
        """Drive every frame of ``job`` through inference + panel rendering, in order.

        Frames are taken from an explicit FIFO and handled one at a time, so
        at most one inference call per job is ever outstanding and the
        results line up index for index with ``job.ordered_frames``.

        A frame whose inference fails is NOT retried and does NOT abort the
        job.  It is rendered with an empty detection list and an ``(ERROR)``
        timestamp so the output video keeps one picture per sampled frame,
        then recorded with ``failed=True``.  Statistics skip it later.

        After every successful call the worker sleeps ``frame_delay_seconds``
        to stay under the hosted service's rate limit.  Failed calls are not
        followed by a delay.
        """
        job.stage = JobStage.PROCESSING
        interval = 1.0 / job.frame_rate_hz
        total = len(job.ordered_frames)
        todo = deque(enumerate(job.ordered_frames))

        while todo:
            index, frame = todo.popleft()
            timestamp = format_seconds(index * interval)
            try:
                result = self.client.infer(frame, confidence=self.cfg.confidence)
            except Exception as e:
                # anything the service hands back that we cannot use is a
                # per-frame failure, never a job failure
                log.error("Inference failed for frame %d: %s", index + 1, e,
                          exc_info=not isinstance(e, InferenceError))
                job.results.append(FrameResult(
                    frame_number=index,
                    timestamp_label=timestamp,
                    detection_result=None,
                    annotated_bytes=render_panel(
                        frame, [], index + 1, f"{timestamp} (ERROR)", self.render_cfg),
                    failed=True,
                    error="Processing failed",
                ))
            else:
                job.results.append(FrameResult(
                    frame_number=index,
                    timestamp_label=timestamp,
                    detection_result=result,
                    annotated_bytes=render_panel(
                        frame, result.detections, index + 1, timestamp, self.render_cfg),
                ))
                if self.cfg.frame_delay_seconds > 0:
                    self._sleep(self.cfg.frame_delay_seconds)

            if progress_callback:
                progress_callback(JobStage.PROCESSING, index + 1, total,
                                  f"Processed frame {index + 1}/{total}")

        return job.results
