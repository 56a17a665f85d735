"""ffmpeg/ffprobe wrapper used to encode and join narration audio."""
import json
import os
import subprocess
from typing import List, Optional, Sequence, Tuple

from .config import PipelineConfig
from .errors import MediaEncodingError


class FFmpegEncoder:
    def __init__(self, config: PipelineConfig, ffmpeg_bin: Optional[str] = None, ffprobe_bin: Optional[str] = None) -> None:
        self.config = config
        self.ffmpeg_bin = ffmpeg_bin or os.getenv("FFMPEG_BIN", "ffmpeg")
        self.ffprobe_bin = ffprobe_bin or os.getenv("FFPROBE_BIN", "ffprobe")

    def encode(self, input_path: str, output_path: str) -> str:
        """Re-encode one file to the target codec, rate and channel layout."""
        cmd = [
            self.ffmpeg_bin,
            "-y",
            "-i",
            input_path,
            "-vn",
            *self._output_args(),
            output_path,
        ]
        self._run(cmd)
        return output_path

    def concatenate(self, inputs: Sequence[Tuple[str, float]], output_path: str) -> str:
        """Join ``(path, duration_hint)`` inputs in order with one ffmpeg call.

        Every input is resampled to the output rate and channel layout and its
        timestamps restarted before the concat filter, so scene boundaries do
        not click or drift.
        """
        if not inputs:
            raise MediaEncodingError("no inputs to concatenate")
        rate = self.config.output_sample_rate
        layout = "mono" if self.config.output_channels == 1 else "stereo"
        cmd: List[str] = [self.ffmpeg_bin, "-y", "-fflags", "+genpts"]
        for path, _duration in inputs:
            cmd += ["-i", path]
        filters: List[str] = []
        labels: List[str] = []
        for idx, (_path, duration) in enumerate(inputs):
            chain = f"[{idx}:a]aresample={rate},aformat=sample_rates={rate}:channel_layouts={layout}"
            if duration > 0:
                # Pads inputs shorter than their hint; never trims.
                chain += f",apad=whole_dur={duration:.3f}"
            chain += f",asetpts=PTS-STARTPTS[a{idx}]"
            filters.append(chain)
            labels.append(f"[a{idx}]")
        filters.append("".join(labels) + f"concat=n={len(inputs)}:v=0:a=1[out]")
        cmd += [
            "-filter_complex",
            ";".join(filters),
            "-map",
            "[out]",
            "-avoid_negative_ts",
            "make_zero",
            *self._output_args(),
            output_path,
        ]
        self._run(cmd)
        return output_path

    def probe_duration(self, path: str) -> float:
        cmd = [
            self.ffprobe_bin,
            "-v",
            "error",
            "-show_entries",
            "format=duration",
            "-of",
            "json",
            path,
        ]
        try:
            result = subprocess.run(
                cmd,
                check=True,
                capture_output=True,
                text=True,
                timeout=self.config.collaborator_timeout_sec,
            )
            data = json.loads(result.stdout or "{}")
            return float(data.get("format", {}).get("duration") or 0.0)
        except (OSError, subprocess.SubprocessError, ValueError):
            return 0.0

    def _output_args(self) -> List[str]:
        return [
            "-ar",
            str(self.config.output_sample_rate),
            "-ac",
            str(self.config.output_channels),
            "-c:a",
            self.config.output_codec,
            "-b:a",
            self.config.output_bitrate,
        ]

    def _run(self, cmd: List[str]) -> None:
        try:
            subprocess.run(
                cmd,
                check=True,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                timeout=self.config.media_timeout_sec,
            )
        except subprocess.CalledProcessError as exc:
            stderr = (exc.stderr or b"").decode("utf-8", errors="ignore").strip()
            tail = stderr.splitlines()[-1] if stderr else ""
            raise MediaEncodingError(f"ffmpeg exited with {exc.returncode}: {tail}") from exc
        except subprocess.TimeoutExpired as exc:
            raise MediaEncodingError(f"ffmpeg timed out after {exc.timeout}s") from exc
        except OSError as exc:
            raise MediaEncodingError(f"cannot run {cmd[0]}: {exc}") from exc
