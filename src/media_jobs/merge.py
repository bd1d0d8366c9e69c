"""Order-preserving video concatenation on top of FfmpegRunner."""

import logging
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .errors import ProcessingError
from .ffmpeg_runner import FfmpegErrorType, FfmpegResult, FfmpegRunner, get_ffmpeg_exe, runner_kwargs
from .models import MergeConfig, StitchOptions

logger = logging.getLogger(__name__)


def check_ffmpeg() -> Dict[str, Any]:
    """Report whether the bundled FFmpeg binary runs, and its version line."""
    try:
        exe = get_ffmpeg_exe()
        result = subprocess.run([exe, "-version"], capture_output=True, text=True, timeout=10)
    except (OSError, RuntimeError, subprocess.SubprocessError) as e:
        return {"available": False, "error": str(e)}

    if result.returncode != 0:
        return {"available": False, "path": exe, "error": result.stderr.strip()}
    version = result.stdout.splitlines()[0] if result.stdout else ""
    return {"available": True, "path": exe, "version": version}


class VideoMerger:
    """Merge ordered local video files into one output file.

    ``fast_concat`` stream-copies through the concat demuxer and requires
    matching codecs; otherwise the concat filter re-encodes, optionally
    scaling to ``width``x``height`` and forcing ``fps``/``bitrate``.
    """

    def __init__(self, config: Optional[MergeConfig] = None, temp_dir: Optional[str] = None):
        self.config = config or MergeConfig()
        self.temp_dir = temp_dir

    def _runner(self) -> FfmpegRunner:
        return FfmpegRunner(temp_dir=self.temp_dir, **runner_kwargs(self.config))

    def merge(
        self,
        ordered_paths: List[Union[str, Path]],
        output_path: Union[str, Path],
        options: Optional[StitchOptions] = None,
    ) -> None:
        """Merge ``ordered_paths`` in list order into ``output_path``.

        Raises:
            ProcessingError: If there are no inputs or FFmpeg fails
        """
        if not ordered_paths:
            raise ProcessingError("No input videos to merge", retryable=False)

        options = options or StitchOptions()
        inputs = [str(p) for p in ordered_paths]
        output = str(output_path)
        runner = self._runner()

        logger.info("Merging %d videos into %s (fast_concat=%s)", len(inputs), output, options.fast_concat)
        if options.fast_concat:
            result = runner.concat_videos(inputs, output)
        else:
            result = runner.concat_filter(
                inputs,
                output,
                width=options.width,
                height=options.height,
                fps=options.fps,
                bitrate=options.bitrate,
                video_codec=self.config.video_codec,
                audio_codec=self.config.audio_codec,
                preset=self.config.preset,
                crf=self.config.crf,
            )

        if not result.success:
            raise self._error_for(result)
        logger.info("Merged video written to %s in %.1fs", output, result.duration_s)

    def _error_for(self, result: FfmpegResult) -> ProcessingError:
        message = f"FFmpeg merge failed: {result.stderr[-500:] if result.stderr else 'Unknown error'}"
        if result.error_type == FfmpegErrorType.TIMEOUT:
            message = f"FFmpeg merge timed out after {result.duration_s:.0f}s"
        if result.artifacts_saved:
            message += f"\nArtifacts: {[str(p) for p in result.artifacts_saved]}"
        return ProcessingError(message, retryable=result.error_type != FfmpegErrorType.PERMANENT)
