from __future__ import annotations

import logging
import os
import subprocess
import threading
import time
from collections import deque
from enum import Enum
from typing import Callable, Deque, List, Optional

from clip_service.errors import EncoderError, OutputMissingError, RenderTimeoutError
from clip_service.render.plan import FRAME_RATE, RenderPlan, format_seconds

OUTPUT_OPTIONS = [
    "-movflags", "+faststart",
    "-c:v", "libx264",
    "-preset", "ultrafast",
    "-crf", "23",
    "-pix_fmt", "yuv420p",
]
BLANK_METADATA = ("title", "comment", "description", "copyright", "author", "album", "artist")
STDERR_TAIL_LINES = 40


class ExecutionState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class RenderProgress:
    """Latest progress of one render, readable from any thread.

    Progress is informational only. ``listener`` is invoked with every new
    percentage from the executor's thread.
    """

    def __init__(self, listener: Optional[Callable[[float], None]] = None) -> None:
        self._lock = threading.Lock()
        self._listener = listener
        self.state = ExecutionState.STARTING
        self.percent: float | None = None
        self.frame: int | None = None

    def update(self, percent: float, frame: int | None = None) -> None:
        with self._lock:
            self.percent = percent
            if frame is not None:
                self.frame = frame
        if self._listener is not None:
            self._listener(percent)

    def set_state(self, state: ExecutionState) -> None:
        with self._lock:
            self.state = state


class RenderExecutor:
    def __init__(
        self,
        ffmpeg_binary: str = "ffmpeg",
        timeout_seconds: float = 15 * 60,
        progress_log_interval: float = 1.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.ffmpeg_binary = ffmpeg_binary
        self.timeout_seconds = timeout_seconds
        self.progress_log_interval = progress_log_interval
        self.log = logger or logging.getLogger(__name__)

    def build_command(self, plan: RenderPlan, output_path: str) -> List[str]:
        cmd = [self.ffmpeg_binary, "-hide_banner", "-nostats", "-y"]
        cmd.extend(plan.input_args())
        cmd.extend(["-filter_complex", plan.filter_complex])
        cmd.extend(["-map", f"[{plan.output_label}]", "-t", format_seconds(plan.total_duration)])
        cmd.extend(OUTPUT_OPTIONS)
        for tag in BLANK_METADATA:
            cmd.extend(["-metadata", f"{tag}="])
        cmd.extend(["-progress", "pipe:1", output_path])
        return cmd

    def run(
        self,
        plan: RenderPlan,
        output_path: str,
        job_id: str = "",
        progress: RenderProgress | None = None,
    ) -> float:
        """Render ``plan`` into ``output_path`` and return the clip duration.

        Raises EncoderError when the encoder fails, RenderTimeoutError when the
        hard ceiling is hit (the process is killed first) and OutputMissingError
        when a clean exit left no usable file behind.
        """
        progress = progress or RenderProgress()
        cmd = self.build_command(plan, output_path)
        self.log.info("ffmpeg command: %s", " ".join(cmd), extra={"job_id": job_id})
        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                bufsize=1,
            )
        except OSError as exc:
            progress.set_state(ExecutionState.FAILED)
            raise EncoderError(str(exc)) from exc
        progress.set_state(ExecutionState.RUNNING)

        timed_out = threading.Event()

        def _kill_on_timeout() -> None:
            timed_out.set()
            process.kill()

        stderr_tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        stderr_thread = threading.Thread(
            target=self._drain_stderr,
            args=(process, stderr_tail, job_id),
            daemon=True,
        )
        stderr_thread.start()
        timer = threading.Timer(self.timeout_seconds, _kill_on_timeout)
        timer.daemon = True
        timer.start()
        try:
            self._read_progress(process, plan.total_duration, progress, job_id)
            process.wait()
        finally:
            timer.cancel()
            if process.poll() is None:
                process.kill()
                process.wait()
            stderr_thread.join(timeout=5)

        if timed_out.is_set():
            progress.set_state(ExecutionState.TIMED_OUT)
            self.log.error("ffmpeg timed out", extra={"job_id": job_id, "timeout": self.timeout_seconds})
            raise RenderTimeoutError(self.timeout_seconds)

        if process.returncode != 0:
            progress.set_state(ExecutionState.FAILED)
            message = "\n".join(stderr_tail) or f"ffmpeg exited with code {process.returncode}"
            self.log.error(
                "error in clip creation",
                extra={"job_id": job_id, "returncode": process.returncode, "error": message},
            )
            raise EncoderError(message, returncode=process.returncode)

        if not os.path.isfile(output_path) or os.path.getsize(output_path) == 0:
            progress.set_state(ExecutionState.FAILED)
            raise OutputMissingError(output_path)

        progress.set_state(ExecutionState.COMPLETED)
        self.log.info(
            "clip creation completed",
            extra={"job_id": job_id, "total_duration": plan.total_duration, "output_path": output_path},
        )
        return plan.total_duration

    def _read_progress(
        self,
        process: subprocess.Popen,
        total_duration: float,
        progress: RenderProgress,
        job_id: str,
    ) -> None:
        if process.stdout is None:
            return
        fields: dict[str, str] = {}
        last_percent: float | None = None
        last_logged = 0.0
        for raw in process.stdout:
            key, sep, value = raw.strip().partition("=")
            if not sep:
                continue
            if key != "progress":
                fields[key] = value
                continue
            percent, frame = progress_percent(fields, total_duration)
            if percent is None or percent == last_percent:
                continue
            last_percent = percent
            progress.update(percent, frame)
            now = time.monotonic()
            if now - last_logged >= self.progress_log_interval:
                self.log.info("Progress: %.2f%%", percent, extra={"job_id": job_id, "frame": frame})
                last_logged = now

    def _drain_stderr(self, process: subprocess.Popen, tail: Deque[str], job_id: str) -> None:
        if process.stderr is None:
            return
        for line in process.stderr:
            line = line.rstrip()
            if not line:
                continue
            tail.append(line)
            self.log.debug("ffmpeg stderr: %s", line, extra={"job_id": job_id})


def progress_percent(fields: dict[str, str], total_duration: float) -> tuple[float | None, int | None]:
    """Percentage from one ``-progress`` block, preferring encoded time over frame count."""
    frame: int | None = None
    try:
        frame = int(fields["frame"])
    except (KeyError, ValueError):
        pass
    if total_duration <= 0:
        return None, frame
    for key in ("out_time_us", "out_time_ms"):
        try:
            seconds = int(fields[key]) / 1_000_000
        except (KeyError, ValueError):
            continue
        return _clamp(seconds / total_duration * 100), frame
    if frame is not None:
        return _clamp(frame / (total_duration * FRAME_RATE) * 100), frame
    return None, frame


def _clamp(percent: float) -> float:
    return max(0.0, min(100.0, percent))
