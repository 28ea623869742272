#!/usr/bin/env python3
"""
Crowd Count — API Client
========================

Usage:
    # Count people in one image
    python client.py image crowd.jpg

    # Annotate a video (async job, polls until done)
    python client.py video clip.mp4 --url https://your-service.example.com

    # Blocking video mode (short clips)
    python client.py video clip.mp4 --sync
"""

import argparse
import base64
import sys
import time
from pathlib import Path

import requests


def predict_image(url: str, image_path: str) -> None:
    """Upload one image, print the count and save the annotated copy."""
    with open(image_path, "rb") as f:
        resp = requests.post(
            f"{url}/predict",
            files={"image": (Path(image_path).name, f, "image/jpeg")},
            timeout=60,
        )
    body = resp.json()
    if resp.status_code != 200 or not body.get("success"):
        print(f"Error {resp.status_code}: {body.get('error') or body.get('detail')}")
        sys.exit(1)

    out = f"{Path(image_path).stem}_annotated.jpg"
    with open(out, "wb") as f:
        f.write(base64.b64decode(body["annotatedImage"]))
    print(f"People detected: {body['count']}")
    print(f"Saved: {out}")


def _print_statistics(stats: dict, total: int, valid: int) -> None:
    print(f"Frames: {total} ({valid} valid) | duration {stats['duration']}")
    print(f"People: total {stats['totalPeople']} | "
          f"avg {stats['averagePeople']} | max {stats['maxPeople']}")


def video_async(url: str, video_path: str) -> None:
    """Submit video, poll for completion, download the outputs."""
    print(f"Uploading {video_path} ...")
    with open(video_path, "rb") as f:
        resp = requests.post(
            f"{url}/predict-video/async",
            files={"video": (Path(video_path).name, f, "video/mp4")},
            timeout=120,
        )
    resp.raise_for_status()
    job_id = resp.json()["job_id"]
    print(f"Job queued: {job_id}")

    while True:
        time.sleep(2)
        r = requests.get(f"{url}/status/{job_id}", timeout=10)
        r.raise_for_status()
        s = r.json()
        status = s["status"]
        pct = s.get("progress") or 0
        msg = s.get("message", "")
        print(f"  [{status}] {pct:.1f}% — {msg}        ", end="\r", flush=True)

        if status == "completed":
            print()
            break
        if status == "failed":
            print(f"\nFailed: {msg}")
            sys.exit(1)

    stem = Path(video_path).stem
    for suffix, endpoint, label in [
        ("_annotated.mp4", f"/download/{job_id}", "Annotated video"),
        ("_frames.csv", f"/download/{job_id}/csv", "Per-frame CSV"),
    ]:
        out = f"{stem}{suffix}"
        print(f"  Downloading {label} -> {out}")
        r = requests.get(f"{url}{endpoint}", timeout=120)
        if r.status_code == 200:
            with open(out, "wb") as f:
                f.write(r.content)
            print(f"    {len(r.content) / 1024:.0f} KB")
        else:
            print(f"    (not available: {r.status_code})")

    _print_statistics(s["statistics"], s["total_frames"], s["valid_frames"])

    requests.delete(f"{url}/jobs/{job_id}", timeout=10)
    print("Done.")


def video_sync(url: str, video_path: str) -> None:
    """Blocking upload — returns the full result envelope."""
    print(f"Uploading {video_path} (sync, will block) ...")
    with open(video_path, "rb") as f:
        resp = requests.post(
            f"{url}/predict-video",
            files={"video": (Path(video_path).name, f, "video/mp4")},
            timeout=1800,
        )
    body = resp.json()
    if resp.status_code != 200 or not body.get("success"):
        print(f"Error {resp.status_code}: {body.get('error') or body.get('detail')}")
        sys.exit(1)

    for frame in body["results"]:
        flag = " (ERROR)" if frame.get("error") else ""
        print(f"  frame {frame['frameNumber'] + 1:>4} @ {frame['timestamp']:>6}: "
              f"{frame['count']} people{flag}")
    _print_statistics(body["statistics"], body["totalFrames"], body["validFrames"])

    out = f"{Path(video_path).stem}_annotated.mp4"
    r = requests.get(f"{url}{body['annotatedVideo']}", timeout=120)
    r.raise_for_status()
    with open(out, "wb") as f:
        f.write(r.content)
    print(f"Saved: {out} ({len(r.content) / 1024:.0f} KB)")


def main():
    p = argparse.ArgumentParser(description="Crowd Count API Client")
    p.add_argument("--url", default="http://localhost:3000", help="API base URL")
    sub = p.add_subparsers(dest="command", required=True)

    pi = sub.add_parser("image", help="Count people in one image")
    pi.add_argument("path", help="Path to input image")

    pv = sub.add_parser("video", help="Annotate a video")
    pv.add_argument("path", help="Path to input video")
    pv.add_argument("--sync", action="store_true", help="Blocking sync mode")
    args = p.parse_args()

    if not Path(args.path).exists():
        print(f"File not found: {args.path}"); sys.exit(1)

    try:
        r = requests.get(f"{args.url}/health", timeout=10)
        r.raise_for_status()
        info = r.json()
        if not info.get("inference_configured"):
            print("Warning: server has no inference endpoint configured")
        live = info.get("live") or {}
        print(f"Server: {info.get('status')} | "
              f"Live in flight: {live.get('in_flight', '?')} | "
              f"Video jobs: {info.get('active_jobs', '?')}")
    except requests.ConnectionError:
        print(f"Cannot reach {args.url}"); sys.exit(1)

    if args.command == "image":
        predict_image(args.url, args.path)
    elif args.sync:
        video_sync(args.url, args.path)
    else:
        video_async(args.url, args.path)


if __name__ == "__main__":
    main()
