"""FFmpeg runner with process isolation, timeout enforcement, and progress monitoring.

Key Features:
- Process isolation with subprocess.Popen
- Dual timeout enforcement (global + no-progress)
- Real-time progress parsing from FFmpeg stderr
- Process tree cleanup via psutil
- Error classification for retry logic
- Optional artifact preservation on failure
"""

import logging
import os
import re
import subprocess
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional

import imageio_ffmpeg
import psutil

logger = logging.getLogger(__name__)

_OUT_TIME_RE = re.compile(r"out_time=(\d+):(\d+):([\d.]+)")
_FRAME_RE = re.compile(r"frame=\s*(\d+)")
_FPS_RE = re.compile(r"fps=\s*([\d.]+)")
_BITRATE_RE = re.compile(r"bitrate=\s*([\d.]+)kbits/s")
_SPEED_RE = re.compile(r"speed=\s*([\d.]+)x")

PERMANENT_PATTERNS = (
    "no such file or directory",
    "invalid data found",
    "invalid argument",
    "permission denied",
    "unsupported codec",
    "invalid codec",
    "moov atom not found",
    "matches no streams",
    "corrupt",
)

TRANSIENT_PATTERNS = (
    "i/o error",
    "connection refused",
    "connection timeout",
    "resource temporarily unavailable",
    "no space left",
)


class FfmpegErrorType(Enum):
    """FFmpeg error classification for retry logic."""
    PERMANENT = "permanent"     # Missing input, invalid format, codec error
    TRANSIENT = "transient"     # I/O stall, disk pressure
    TIMEOUT = "timeout"         # Global or no-progress timeout
    PROCESS_KILLED = "killed"


@dataclass
class FfmpegProgress:
    """Real-time FFmpeg progress metrics."""
    current_time_s: float = 0.0
    total_duration_s: float = 0.0
    fps: float = 0.0
    bitrate_kbps: float = 0.0
    speed: float = 0.0
    frame: int = 0
    last_update: float = 0.0


@dataclass
class FfmpegResult:
    """Result of FFmpeg execution."""
    success: bool
    returncode: int
    stderr: str
    duration_s: float
    command: List[str] = field(default_factory=list)
    error_type: Optional[FfmpegErrorType] = None
    final_progress: Optional[FfmpegProgress] = None
    artifacts_saved: List[Path] = field(default_factory=list)


def get_ffmpeg_exe() -> str:
    return imageio_ffmpeg.get_ffmpeg_exe()


class FfmpegRunner:
    """FFmpeg orchestration with timeout and zombie prevention.

    One runner executes one command at a time; create a runner per merge.

    Example:
        >>> runner = FfmpegRunner(global_timeout_s=600)
        >>> result = runner.concat_videos(["a.mp4", "b.mp4"], "out.mp4")
        >>> if not result.success:
        ...     print(result.error_type, result.stderr[-500:])
    """

    def __init__(
        self,
        global_timeout_s: int = 1800,
        no_progress_timeout_s: int = 120,
        kill_grace_period_s: int = 5,
        save_artifacts_on_failure: bool = False,
        ffmpeg_loglevel: str = "info",
        temp_dir: Optional[str] = None,
        progress_callback: Optional[Callable[[FfmpegProgress], None]] = None,
    ):
        self.global_timeout_s = global_timeout_s
        self.no_progress_timeout_s = no_progress_timeout_s
        self.kill_grace_period_s = kill_grace_period_s
        self.save_artifacts_on_failure = save_artifacts_on_failure
        self.ffmpeg_loglevel = ffmpeg_loglevel
        self.temp_dir = temp_dir
        self.progress_callback = progress_callback

        self._process: Optional[subprocess.Popen] = None
        self._progress = FfmpegProgress()
        self._stderr_lines: List[str] = []

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def concat_videos(self, input_files: List[str], output_path: str) -> FfmpegResult:
        """Concatenate videos with the concat demuxer (stream copy).

        Inputs must share codecs and stream layout.

        Raises:
            ValueError: If input_files is empty
        """
        if not input_files:
            raise ValueError("No input files provided for concatenation")

        list_path = Path(output_path).with_suffix(".concat.txt")
        try:
            with open(list_path, "w", encoding="utf-8") as f:
                for path in input_files:
                    escaped = str(Path(path).resolve()).replace("'", "'\\''")
                    f.write(f"file '{escaped}'\n")

            cmd = [
                get_ffmpeg_exe(),
                "-y",
                "-f", "concat",
                "-safe", "0",
                "-i", str(list_path),
                "-c", "copy",
                "-progress", "pipe:2",
                "-loglevel", self.ffmpeg_loglevel,
                output_path,
            ]
            return self._run_ffmpeg(cmd)
        finally:
            list_path.unlink(missing_ok=True)

    def build_concat_filter_command(
        self,
        input_files: List[str],
        output_path: str,
        width: Optional[int] = None,
        height: Optional[int] = None,
        fps: Optional[int] = None,
        bitrate: Optional[str] = None,
        video_codec: str = "libx264",
        audio_codec: str = "aac",
        preset: str = "fast",
        crf: Optional[int] = 23,
    ) -> List[str]:
        """Build a re-encoding concat command; segment order follows input order."""
        if not input_files:
            raise ValueError("No input files provided for concatenation")

        cmd = [get_ffmpeg_exe(), "-y"]
        for path in input_files:
            cmd.extend(["-i", str(path)])

        n = len(input_files)
        if width and height:
            scale = ";".join(f"[{i}:v]scale={width}:{height}[v{i}s]" for i in range(n))
            pairs = "".join(f"[v{i}s][{i}:a]" for i in range(n))
            filter_complex = f"{scale};{pairs}concat=n={n}:v=1:a=1[v][a]"
        else:
            pairs = "".join(f"[{i}:v][{i}:a]" for i in range(n))
            filter_complex = f"{pairs}concat=n={n}:v=1:a=1[v][a]"

        cmd.extend([
            "-filter_complex", filter_complex,
            "-map", "[v]",
            "-map", "[a]",
            "-c:v", video_codec,
            "-c:a", audio_codec,
            "-preset", preset,
        ])
        if crf is not None and not bitrate:
            cmd.extend(["-crf", str(crf)])
        if bitrate:
            cmd.extend(["-b:v", bitrate])
        if fps:
            cmd.extend(["-r", str(fps)])

        cmd.extend([
            "-progress", "pipe:2",
            "-loglevel", self.ffmpeg_loglevel,
            output_path,
        ])
        return cmd

    def concat_filter(self, input_files: List[str], output_path: str, **kwargs) -> FfmpegResult:
        """Concatenate videos with the concat filter (re-encode)."""
        cmd = self.build_concat_filter_command(input_files, output_path, **kwargs)
        return self._run_ffmpeg(cmd)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _run_ffmpeg(self, cmd: List[str], expected_duration: Optional[float] = None) -> FfmpegResult:
        """Execute FFmpeg with timeout enforcement and progress monitoring."""
        start_time = time.time()
        self._progress = FfmpegProgress(total_duration_s=expected_duration or 0.0, last_update=start_time)
        self._stderr_lines = []
        timeout_type = None

        logger.debug("Running ffmpeg: %s", " ".join(cmd))
        self._process = subprocess.Popen(
            cmd,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            text=True,
            bufsize=1,
        )
        monitor = threading.Thread(
            target=self._monitor_progress, args=(self._process.stderr,), daemon=True
        )
        monitor.start()

        try:
            while True:
                try:
                    returncode = self._process.wait(timeout=1.0)
                    break
                except subprocess.TimeoutExpired:
                    pass

                now = time.time()
                if now - start_time > self.global_timeout_s:
                    timeout_type = "global"
                elif now - self._progress.last_update > self.no_progress_timeout_s:
                    timeout_type = "no_progress"

                if timeout_type:
                    logger.warning("FFmpeg %s timeout, killing process tree", timeout_type)
                    self._kill_process_tree()
                    returncode = -1
                    break
        except BaseException:
            self._kill_process_tree()
            raise
        finally:
            monitor.join(timeout=2)
            self._process = None

        stderr = "".join(self._stderr_lines)
        error_type = None
        if timeout_type:
            error_type = FfmpegErrorType.TIMEOUT
        elif returncode < 0:
            error_type = FfmpegErrorType.PROCESS_KILLED
        elif returncode != 0:
            error_type = classify_error(stderr)

        artifacts = []
        if returncode != 0 and self.save_artifacts_on_failure:
            artifacts = self._save_failure_artifacts(cmd, stderr)

        return FfmpegResult(
            success=(returncode == 0),
            returncode=returncode,
            stderr=stderr,
            duration_s=time.time() - start_time,
            command=cmd,
            error_type=error_type,
            final_progress=self._progress,
            artifacts_saved=artifacts,
        )

    def _monitor_progress(self, stderr_stream) -> None:
        """Consume FFmpeg stderr, updating progress and keeping the log.

        FFmpeg progress format (one key per line):
            frame=123
            fps=25.00
            bitrate=1234.5kbits/s
            out_time=00:00:05.123456
            speed=2.5x
        """
        last_callback = 0.0

        for line in stderr_stream:
            self._stderr_lines.append(line)
            if self._parse_progress_line(line):
                self._progress.last_update = time.time()

            now = time.time()
            if self.progress_callback and now - last_callback >= 2.0:
                try:
                    self.progress_callback(self._progress)
                    last_callback = now
                except Exception as e:
                    logger.warning("Progress callback error: %s", e)

    def _parse_progress_line(self, line: str) -> bool:
        """Update progress from one stderr line; True if it carried progress."""
        updated = False

        match = _OUT_TIME_RE.search(line)
        if match:
            h, m, s = match.groups()
            self._progress.current_time_s = int(h) * 3600 + int(m) * 60 + float(s)
            updated = True

        for pattern, attr, cast in (
            (_FRAME_RE, "frame", int),
            (_FPS_RE, "fps", float),
            (_BITRATE_RE, "bitrate_kbps", float),
            (_SPEED_RE, "speed", float),
        ):
            match = pattern.search(line)
            if match:
                setattr(self._progress, attr, cast(match.group(1)))
                updated = True

        return updated

    def _kill_process_tree(self) -> None:
        """Terminate FFmpeg and its children, escalating to SIGKILL after the grace period."""
        if not self._process:
            return

        try:
            parent = psutil.Process(self._process.pid)
            procs = parent.children(recursive=True) + [parent]
        except psutil.NoSuchProcess:
            return

        for proc in procs:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass

        _, alive = psutil.wait_procs(procs, timeout=self.kill_grace_period_s)
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass

    def _save_failure_artifacts(self, cmd: List[str], stderr: str) -> List[Path]:
        """Write the failing command and its stderr next to the temp files."""
        temp_dir = self._get_temp_dir()
        timestamp = int(time.time())
        log_path = temp_dir / f"ffmpeg_error_{os.getpid()}_{timestamp}.log"

        try:
            with open(log_path, "w") as f:
                f.write(f"Timestamp: {time.ctime()}\n")
                f.write(f"PID: {os.getpid()}\n\n")
                f.write("COMMAND:\n")
                f.write(" ".join(cmd) + "\n\n")
                f.write("STDERR:\n")
                f.write(stderr or "(empty)\n")
        except OSError as e:
            logger.warning("Failed to save ffmpeg error log: %s", e)
            return []

        return [log_path]

    def _get_temp_dir(self) -> Path:
        temp_dir = Path(self.temp_dir or os.environ.get("TMPDIR", "/tmp"))
        temp_dir.mkdir(parents=True, exist_ok=True)
        return temp_dir


def classify_error(stderr: str) -> FfmpegErrorType:
    """Classify an FFmpeg failure from its stderr; unknown errors count as transient."""
    stderr_lower = stderr.lower()

    for pattern in PERMANENT_PATTERNS:
        if pattern in stderr_lower:
            return FfmpegErrorType.PERMANENT

    for pattern in TRANSIENT_PATTERNS:
        if pattern in stderr_lower:
            return FfmpegErrorType.TRANSIENT

    return FfmpegErrorType.TRANSIENT


def runner_kwargs(merge_config) -> Dict[str, object]:
    """FfmpegRunner constructor arguments from a MergeConfig."""
    return {
        "global_timeout_s": merge_config.global_timeout_s,
        "no_progress_timeout_s": merge_config.no_progress_timeout_s,
        "kill_grace_period_s": merge_config.kill_grace_period_s,
        "save_artifacts_on_failure": merge_config.save_artifacts_on_failure,
        "ffmpeg_loglevel": merge_config.ffmpeg_loglevel,
    }
