#!/usr/bin/env python3

import argparse
import json
import logging
import os
import pathlib
import re
import shlex
import shutil
import subprocess
import sys
import tempfile
import threading
from collections import deque
from enum import Enum
from typing import (
    Any,
    Callable,
    Deque,
    Dict,
    List,
    NamedTuple,
    Optional,
    Sequence,
    Tuple,
    Union,
    cast,
)

OUTPUT_SUFFIX = "-target"
PIXEL_FORMAT = "yuv420p10le"
X26X_PRESET = "veryslow"
MAX_BITRATE = 2**31 - 1
# 8 * 1024 * 1024 / 1000: KiB per second to encoder bitrate units
KIB_TO_BITRATE = 8388.608
STDERR_TAIL_LINES = 20
PASSLOG_NAME = "ffmpeg2pass"

RESOLUTION_LABELS = ["144p", "240p", "360p", "480p", "720p", "1080p", "1440p", "2160p"]

FFMPEG_LOG_FLAGS = ["-hide_banner", "-loglevel", "warning"]
FFMPEG_PROGRESS_FLAGS = ["-progress", "pipe:1", "-nostats"]

VERBOSE_LEVEL = 0


class TargetSizeError(Exception):
    pass


class PreconditionError(TargetSizeError):
    pass


class ConfigurationError(TargetSizeError):
    pass


class FeasibilityError(TargetSizeError):
    pass


class EncodeError(TargetSizeError):
    pass


class UserAbort(Exception):
    pass


class VideoCodecId(Enum):
    H264 = "libx264"
    HEVC = "libx265"
    VP8 = "libvpx"
    VP9 = "libvpx-vp9"
    AV1 = "libaom-av1"

    @property
    def encoder(self) -> str:
        return self.value


class AudioCodecId(Enum):
    AAC = "aac"
    MP3 = "libmp3lame"
    OPUS = "libopus"

    @property
    def encoder(self) -> str:
        return self.value


class Keep(Enum):
    SOURCE = "source"


KEEP_SOURCE = Keep.SOURCE

VideoChoice = Union[VideoCodecId, Keep]
AudioChoice = Union[AudioCodecId, Keep]

_VIDEO_ALIASES: Dict[str, VideoCodecId] = {
    "h264": VideoCodecId.H264,
    "libx264": VideoCodecId.H264,
    "h265": VideoCodecId.HEVC,
    "libx265": VideoCodecId.HEVC,
    "hevc": VideoCodecId.HEVC,
    "vp8": VideoCodecId.VP8,
    "libvpx": VideoCodecId.VP8,
    "vp9": VideoCodecId.VP9,
    "libvpx-vp9": VideoCodecId.VP9,
    "av1": VideoCodecId.AV1,
    "libaom-av1": VideoCodecId.AV1,
}

_AUDIO_ALIASES: Dict[str, AudioCodecId] = {
    "aac": AudioCodecId.AAC,
    "mp3": AudioCodecId.MP3,
    "libmp3lame": AudioCodecId.MP3,
    "opus": AudioCodecId.OPUS,
    "libopus": AudioCodecId.OPUS,
}

VIDEO_CONTAINERS: Dict[VideoCodecId, str] = {
    VideoCodecId.H264: "mp4",
    VideoCodecId.HEVC: "mp4",
    VideoCodecId.VP8: "webm",
    VideoCodecId.VP9: "webm",
    VideoCodecId.AV1: "webm",
}

AUDIO_CONTAINERS: Dict[AudioCodecId, str] = {
    AudioCodecId.AAC: "m4a",
    AudioCodecId.MP3: "mp3",
    AudioCodecId.OPUS: "opus",
}

TWO_PASS_CODECS = {VideoCodecId.VP8, VideoCodecId.VP9, VideoCodecId.AV1}
OPUS_ONLY_CODECS = {VideoCodecId.VP8, VideoCodecId.VP9, VideoCodecId.AV1}
X26X_CODECS = {VideoCodecId.H264, VideoCodecId.HEVC}

OPTIMIZED_FILTERS: Dict[VideoCodecId, List[str]] = {
    VideoCodecId.AV1: [
        "-cpu-used 6",
        "-lag-in-frames 35",
        "-row-mt 1",
        "-tile-rows 0",
        "-tile-columns 1",
    ],
    VideoCodecId.VP9: [
        "-row-mt 1",
        "-lag-in-frames 25",
        "-cpu-used 4",
        "-auto-alt-ref 1",
        "-arnr-maxframes 7",
        "-arnr-strength 4",
        "-aq-mode 0",
        "-enable-tpl 1",
        "-row-mt 1",
    ],
}


class VideoStreamInfo(NamedTuple):
    index: int
    codec: str
    width: int
    height: int


class AudioStreamInfo(NamedTuple):
    index: int
    codec: str
    bitrate: int


class MediaInfo(NamedTuple):
    path: str
    duration: float
    video: Optional[VideoStreamInfo]
    audio: Optional[AudioStreamInfo]


class VideoDecision(NamedTuple):
    codec: VideoChoice
    encoder: str
    pixel_format: str
    size: Optional[Tuple[int, int]]
    preset: Optional[str]
    tuning: Tuple[str, ...]


class AudioDecision(NamedTuple):
    codec: AudioChoice
    encoder: str


class BitratePlan(NamedTuple):
    video_bps: int
    audio_bps: int
    desired_bps: float


class EncodeOptions(NamedTuple):
    target_size: float
    output_dir: str
    video_codec: VideoChoice = KEEP_SOURCE
    audio_codec: AudioChoice = KEEP_SOURCE
    audio_bitrate: int = 0
    resolution: Optional[str] = None
    optimized_filters: bool = False


class EncodePlan(NamedTuple):
    source: str
    output: str
    duration: float
    video: Optional[VideoDecision] = None
    audio: Optional[AudioDecision] = None
    bitrate: Optional[BitratePlan] = None
    threads: int = 1

    @property
    def two_pass(self) -> bool:
        if self.video is None:
            return False
        return effective_video_codec(self.video.codec, self.video.encoder) in (
            TWO_PASS_CODECS
        )


class ProgressUpdate(NamedTuple):
    percent: int
    eta: float


def _print_command(cmd: Sequence[str]) -> None:
    if not VERBOSE_LEVEL:
        return
    cmdline = " ".join(shlex.quote(str(part)) for part in cmd)
    print(cmdline, file=sys.stderr)


def kbps_to_bps(s: str) -> int:
    s = s.strip().lower()
    if s.endswith("k"):
        return int(float(s[:-1]) * 1000)
    if s.endswith("m"):
        return int(float(s[:-1]) * 1_000_000)
    return int(float(s))


# ----------------------------------------------------------------- probing


def ffprobe_json(cmd: Sequence[str]) -> dict[str, Any]:
    _print_command(cmd)
    proc = subprocess.run(
        cmd,
        check=True,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
    )
    stdout = proc.stdout.decode("utf-8", "replace")
    if not stdout.strip():
        return {}
    return cast(dict[str, Any], json.loads(stdout))


def _parse_duration_value(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value) if value >= 0 else None
    if isinstance(value, str):
        s = value.strip()
        if not s or s.lower() in {"n/a", "nan"}:
            return None
        try:
            return float(s)
        except ValueError:
            if ":" in s:
                parts = s.split(":")
                try:
                    total = 0.0
                    for part in parts:
                        total = total * 60 + float(part)
                    return total
                except ValueError:
                    return None
    return None


def _stream_tag_int(stream: Dict[str, Any], *keys: str) -> Optional[int]:
    tags = stream.get("tags")
    if not isinstance(tags, dict):
        return None
    for key in keys:
        value = tags.get(key)
        if isinstance(value, str):
            s = value.strip()
            if not s:
                continue
            try:
                parsed = int(float(s))
            except ValueError:
                continue
            if parsed > 0:
                return parsed
    return None


def _extract_stream_bitrate(stream: Dict[str, Any]) -> Optional[int]:
    candidates = [
        stream.get("bit_rate"),
        _stream_tag_int(stream, "BPS", "bps", "BPS-eng", "BPS-ENG", "NBPS"),
    ]
    for candidate in candidates:
        if candidate is None:
            continue
        try:
            if isinstance(candidate, str):
                value = int(float(candidate.strip()))
            elif isinstance(candidate, (int, float)):
                value = int(candidate)
            else:
                continue
        except ValueError:
            continue
        if value > 0:
            return value
    return None


def _is_attached_picture_stream(stream: Dict[str, Any]) -> bool:
    disp = stream.get("disposition")
    if not isinstance(disp, dict):
        return False
    try:
        return int(disp.get("attached_pic") or 0) == 1
    except (TypeError, ValueError):
        return False


def _stream_int(stream: Dict[str, Any], key: str) -> int:
    try:
        return int(stream.get(key) or 0)
    except (TypeError, ValueError):
        return 0


def probe_media(path: str) -> MediaInfo:
    cmd = [
        "ffprobe",
        "-v",
        "error",
        "-print_format",
        "json",
        "-show_streams",
        "-show_format",
        path,
    ]
    try:
        data = ffprobe_json(cmd)
    except subprocess.CalledProcessError as exc:
        err = (
            exc.stderr.decode("utf-8", "replace").strip()
            if getattr(exc, "stderr", None)
            else ""
        )
        raise PreconditionError(f"ffprobe failed for {path}: {err or exc}") from exc
    except ValueError as exc:
        raise PreconditionError(f"ffprobe returned invalid JSON for {path}") from exc

    video: Optional[VideoStreamInfo] = None
    audio: Optional[AudioStreamInfo] = None
    stream_durations: List[float] = []
    for stream in data.get("streams") or []:
        if not isinstance(stream, dict):
            continue
        codec_type = stream.get("codec_type")
        codec = str(stream.get("codec_name") or "").lower()
        if codec_type == "video" and video is None:
            if _is_attached_picture_stream(stream):
                continue
            video = VideoStreamInfo(
                _stream_int(stream, "index"),
                codec,
                _stream_int(stream, "width"),
                _stream_int(stream, "height"),
            )
        elif codec_type == "audio" and audio is None:
            audio = AudioStreamInfo(
                _stream_int(stream, "index"),
                codec,
                _extract_stream_bitrate(stream) or 0,
            )
        else:
            continue
        d = _parse_duration_value(stream.get("duration"))
        if d is not None and d > 0:
            stream_durations.append(d)

    fmt = data.get("format") or {}
    duration = _parse_duration_value(fmt.get("duration"))
    if not duration and stream_durations:
        duration = max(stream_durations)
    return MediaInfo(path, duration or 0.0, video, audio)


# ------------------------------------------------------- codec resolution


def _lookup_codec(token: str, aliases: Dict[str, Any]) -> Optional[Any]:
    key = token.strip().lower()
    if key in aliases:
        return aliases[key]
    for alias in sorted(aliases, key=len, reverse=True):
        if alias in key:
            return aliases[alias]
    return None


def resolve_video_codec(token: Optional[str]) -> VideoChoice:
    if not token or not token.strip():
        return KEEP_SOURCE
    codec = _lookup_codec(token, _VIDEO_ALIASES)
    if codec is None:
        raise ConfigurationError(
            f"Invalid codec: {token}; valid: {', '.join(_VIDEO_ALIASES)}"
        )
    return cast(VideoCodecId, codec)


def resolve_audio_codec(token: Optional[str]) -> AudioChoice:
    if not token or not token.strip():
        return KEEP_SOURCE
    codec = _lookup_codec(token, _AUDIO_ALIASES)
    if codec is None:
        raise ConfigurationError(
            f"Invalid codec: {token}; valid: {', '.join(_AUDIO_ALIASES)}"
        )
    return cast(AudioCodecId, codec)


def container_for_video(codec: VideoCodecId) -> str:
    return VIDEO_CONTAINERS[codec]


def container_for_audio(codec: AudioCodecId) -> str:
    return AUDIO_CONTAINERS[codec]


def effective_video_codec(
    codec: VideoChoice, source_codec: str
) -> Optional[VideoCodecId]:
    """The codec the output stream ends up in, resolving KEEP_SOURCE through
    the source stream's codec name when it is one we know."""
    if isinstance(codec, VideoCodecId):
        return codec
    return _VIDEO_ALIASES.get(source_codec.lower())


def effective_audio_codec(
    codec: AudioChoice, source_codec: str
) -> Optional[AudioCodecId]:
    if isinstance(codec, AudioCodecId):
        return codec
    return _AUDIO_ALIASES.get(source_codec.lower())


# ------------------------------------------------------------- resolution


def parse_resolution(label: str) -> int:
    m = re.fullmatch(r"\s*(\d+)[pP]\s*", label or "")
    if not m or int(m.group(1)) <= 0:
        raise ConfigurationError(
            f"Invalid resolution: {label}; expected e.g. {', '.join(RESOLUTION_LABELS)}"
        )
    return int(m.group(1))


def _even(value: int) -> int:
    return max(2, value - value % 2)


def scale_resolution(label: str, width: int, height: int) -> Tuple[int, int]:
    target = parse_resolution(label)
    if width <= 0 or height <= 0:
        raise ConfigurationError(
            f"cannot scale a {width}x{height} video stream to {label}"
        )
    if width > height:
        return _even(target), _even(int(round(height * target / width)))
    if height > width:
        return _even(int(round(width * target / height))), _even(target)
    return _even(target), _even(target)


# ---------------------------------------------------------------- planning


def plan_bitrate(
    target_size: float,
    duration: float,
    audio_bitrate: int,
    audio_bitrate_override: int = 0,
    has_audio: bool = True,
) -> BitratePlan:
    """Split the size budget for ``target_size`` MiB into video and audio
    bitrates (bits per second).

    The duration is truncated to whole seconds, matching the sizes the tool
    has always produced.
    """
    seconds = int(duration)
    if seconds <= 0:
        raise FeasibilityError(
            f"Media duration ({duration:.2f}s) is too short to plan a bitrate."
        )
    size_kib = target_size * 1024
    desired = size_kib * KIB_TO_BITRATE / seconds
    audio_bps = audio_bitrate_override or (audio_bitrate if has_audio else 0)
    video_bps = desired - audio_bps
    if video_bps <= 0 or (has_audio and audio_bps <= 0):
        raise FeasibilityError("Target file size is too small.")
    if video_bps >= MAX_BITRATE or audio_bps >= MAX_BITRATE:
        raise FeasibilityError("Target file size is too large.")
    return BitratePlan(int(video_bps), int(audio_bps), desired)


def decide_video(
    stream: Optional[VideoStreamInfo],
    codec: VideoChoice,
    resolution: Optional[str] = None,
    optimized_filters: bool = False,
) -> Optional[VideoDecision]:
    if stream is None:
        return None
    size = None
    if resolution:
        size = scale_resolution(resolution, stream.width, stream.height)
    effective = effective_video_codec(codec, stream.codec)
    encoder = effective.encoder if effective else stream.codec
    tuning: List[str] = []
    if optimized_filters and isinstance(codec, VideoCodecId):
        for flag in OPTIMIZED_FILTERS.get(codec, []):
            tuning.extend(flag.split())
    return VideoDecision(
        codec=codec,
        encoder=encoder,
        pixel_format=PIXEL_FORMAT,
        size=size,
        preset=X26X_PRESET if effective in X26X_CODECS else None,
        tuning=tuple(tuning),
    )


def decide_audio(
    stream: Optional[AudioStreamInfo],
    codec: AudioChoice,
    video_codec: Optional[VideoCodecId] = None,
) -> Optional[AudioDecision]:
    if stream is None:
        return None
    resolved = codec
    if resolved is KEEP_SOURCE and stream.codec == "vorbis":
        logging.info("source audio is vorbis; re-encoding as AAC")
        resolved = AudioCodecId.AAC
    if video_codec in OPUS_ONLY_CODECS and resolved is not AudioCodecId.OPUS:
        if isinstance(codec, AudioCodecId):
            logging.warning(
                "%s video requires Opus audio; ignoring requested %s",
                video_codec.name,
                codec.name,
            )
        resolved = AudioCodecId.OPUS
    effective = effective_audio_codec(resolved, stream.codec)
    encoder = effective.encoder if effective else stream.codec
    return AudioDecision(resolved, encoder)


def output_path_for(source: str, output_dir: str) -> str:
    src = pathlib.Path(source)
    return os.path.join(output_dir, f"{src.stem}{OUTPUT_SUFFIX}{src.suffix}")


def _with_extension(path: str, ext: str) -> str:
    return str(pathlib.PurePath(path).with_suffix("." + ext))


def with_video(plan: EncodePlan, info: MediaInfo, options: EncodeOptions) -> EncodePlan:
    if info.video is None:
        if isinstance(options.video_codec, VideoCodecId):
            logging.warning("no video stream in %s; ignoring video codec", info.path)
        return plan
    video = decide_video(
        info.video,
        options.video_codec,
        options.resolution,
        options.optimized_filters,
    )
    output = plan.output
    if isinstance(options.video_codec, VideoCodecId):
        output = _with_extension(output, container_for_video(options.video_codec))
    return plan._replace(video=video, output=output)


def with_audio(plan: EncodePlan, info: MediaInfo, options: EncodeOptions) -> EncodePlan:
    if info.audio is None:
        return plan
    video_codec = None
    if plan.video is not None and info.video is not None:
        video_codec = effective_video_codec(plan.video.codec, info.video.codec)
    audio = decide_audio(info.audio, options.audio_codec, video_codec)
    output = plan.output
    if info.video is None and audio is not None:
        codec = effective_audio_codec(audio.codec, info.audio.codec)
        if codec is not None:
            output = _with_extension(output, container_for_audio(codec))
    return plan._replace(audio=audio, output=output)


def with_bitrate(
    plan: EncodePlan, info: MediaInfo, options: EncodeOptions
) -> EncodePlan:
    bitrate = plan_bitrate(
        options.target_size,
        info.duration,
        info.audio.bitrate if info.audio else 0,
        options.audio_bitrate,
        has_audio=info.audio is not None,
    )
    return plan._replace(bitrate=bitrate)


PLAN_STEPS: List[Callable[[EncodePlan, MediaInfo, EncodeOptions], EncodePlan]] = [
    with_video,
    with_audio,
    with_bitrate,
]


def build_plan(info: MediaInfo, options: EncodeOptions) -> EncodePlan:
    plan = EncodePlan(
        source=info.path,
        output=output_path_for(info.path, options.output_dir),
        duration=info.duration,
        threads=os.cpu_count() or 1,
    )
    for step in PLAN_STEPS:
        plan = step(plan, info, options)
    return plan


def ffmpeg_args(
    plan: EncodePlan,
    output: Optional[str] = None,
    pass_number: Optional[int] = None,
    passlog: Optional[str] = None,
) -> Tuple[str, ...]:
    """Ordered ffmpeg arguments (without the program name) for ``plan``.

    ``pass_number`` 1 produces the analysis pass of a two-pass encode, which
    drops audio and writes to the null muxer.
    """
    if plan.bitrate is None:
        raise ValueError("plan has no bitrate; build it with build_plan()")
    args: List[str] = list(FFMPEG_LOG_FLAGS) + ["-y", "-i", plan.source]
    if plan.video is not None:
        video = plan.video
        args += ["-map", "0:v:0"]
        if video.size is not None:
            args += ["-s", f"{video.size[0]}x{video.size[1]}"]
        args += [
            "-c:v",
            video.encoder,
            "-b:v",
            str(plan.bitrate.video_bps),
            "-pix_fmt",
            video.pixel_format,
        ]
        if video.preset:
            args += ["-preset", video.preset]
        args += list(video.tuning)
    if pass_number is not None:
        args += ["-pass", str(pass_number)]
        if passlog:
            args += ["-passlogfile", passlog]
    if pass_number == 1:
        args += ["-an", "-threads", str(plan.threads), "-f", "null", os.devnull]
        return tuple(args)
    if plan.audio is not None:
        args += [
            "-map",
            "0:a:0",
            "-c:a",
            plan.audio.encoder,
            "-b:a",
            str(plan.bitrate.audio_bps),
        ]
    args += ["-threads", str(plan.threads), output or plan.output]
    return tuple(args)


def confirm_overwrite(path: str, assume_yes: bool = False) -> None:
    if not os.path.exists(path):
        return
    if not assume_yes:
        try:
            answer = input("File already exists. Overwrite? (y/n) ")
        except EOFError:
            answer = ""
        if not answer.strip().lower().startswith("y"):
            raise UserAbort(path)
    os.remove(path)


# ---------------------------------------------------------------- progress


class ProgressTracker:
    """Turns encoded-duration samples into a percentage and an ETA.

    Two-pass encodes report both passes against the same timeline, so each
    pass only accounts for half of the bar.
    """

    def __init__(self, total: float, two_pass: bool = False) -> None:
        self.total = total
        self.two_pass = two_pass
        self.last_percent = 0

    def on_sample(self, elapsed: float) -> ProgressUpdate:
        if self.total <= 0:
            return ProgressUpdate(self.last_percent, 0.0)
        if self.two_pass:
            percent = elapsed / self.total * 50
            eta = self.total - elapsed / 2
        else:
            percent = elapsed / self.total * 100
            eta = self.total - elapsed
        shown = min(100, max(0, int(percent)))
        self.last_percent = max(self.last_percent, shown)
        return ProgressUpdate(self.last_percent, max(0.0, eta))


def format_eta(seconds: float) -> str:
    total = int(seconds)
    return f"{total // 3600:02d}:{total % 3600 // 60:02d}:{total % 60:02d}"


def render_progress(update: ProgressUpdate, width: int = 100) -> str:
    filled = update.percent * width // 100
    bar = "█" * filled
    if filled < width:
        bar += "▓" + "░" * (width - filled - 1)
    return f"Progress: {bar} {update.percent}% | ETA: {format_eta(update.eta)}"


def parse_out_time(value: str) -> Optional[float]:
    s = value.strip()
    if not s or s.upper() == "N/A":
        return None
    try:
        h, m, sec = s.split(":")
        return int(h) * 3600 + int(m) * 60 + float(sec)
    except ValueError:
        return None


def _parse_progress_time(key: str, value: str) -> Optional[float]:
    if key in ("out_time_us", "out_time_ms"):
        # ffmpeg reports out_time_ms in microseconds as well
        try:
            return int(value.strip()) / 1_000_000
        except ValueError:
            return None
    if key == "out_time":
        return parse_out_time(value)
    return None


# ------------------------------------------------------------------ driver


def _drain_stderr(stream: Any, tail: Deque[str]) -> None:
    for line in stream:
        tail.append(line.rstrip())
        logging.debug("ffmpeg: %s", line.rstrip())


def run_ffmpeg(
    cmd: Sequence[str],
    on_sample: Optional[Callable[[float], None]] = None,
) -> None:
    """Run one ffmpeg invocation, feeding encoded-duration samples to
    ``on_sample`` in the order ffmpeg reports them.

    Returns only after stdout is exhausted and the process has exited.
    """
    full_cmd = list(cmd)
    if on_sample is not None:
        full_cmd[1:1] = FFMPEG_PROGRESS_FLAGS
    _print_command(full_cmd)
    proc = subprocess.Popen(
        full_cmd,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        encoding="utf-8",
        errors="replace",
        bufsize=1,
    )
    tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)
    reader = threading.Thread(target=_drain_stderr, args=(proc.stderr, tail))
    reader.daemon = True
    reader.start()
    try:
        latest: Optional[float] = None
        for line in proc.stdout:
            key, sep, value = line.strip().partition("=")
            if not sep:
                continue
            parsed = _parse_progress_time(key, value)
            if parsed is not None:
                latest = parsed
            elif key == "progress" and latest is not None and on_sample:
                on_sample(latest)
        proc.wait()
    except BaseException:
        proc.kill()
        proc.wait()
        raise
    finally:
        reader.join(timeout=5)
    if proc.returncode != 0:
        detail = "\n".join(tail)
        raise EncodeError(
            f"ffmpeg exited with code {proc.returncode}"
            + (f":\n{detail}" if detail else "")
        )


def part_path_for(output: str) -> str:
    p = pathlib.Path(output)
    return str(p.with_name(f"{p.stem}.part{p.suffix}"))


def _offset_progress(
    on_progress: Optional[Callable[[float], None]], offset: float
) -> Optional[Callable[[float], None]]:
    if on_progress is None:
        return None
    report = on_progress

    def forward(elapsed: float) -> None:
        report(offset + elapsed)

    return forward


def encode_commands(plan: EncodePlan, output: str, passlog: str) -> List[List[str]]:
    """Return the ffmpeg invocations for ``plan``, one per pass."""
    if plan.two_pass:
        return [
            ["ffmpeg", *ffmpeg_args(plan, output, 1, passlog)],
            ["ffmpeg", *ffmpeg_args(plan, output, 2, passlog)],
        ]
    return [["ffmpeg", *ffmpeg_args(plan, output)]]


def run_encode(
    plan: EncodePlan,
    on_progress: Optional[Callable[[float], None]] = None,
) -> str:
    """Encode ``plan`` into a ``.part`` sibling and move it into place once
    ffmpeg succeeds. Returns the final output path."""
    part_path = part_path_for(plan.output)
    try:
        with tempfile.TemporaryDirectory(prefix="targetsize-") as tmp:
            passlog = os.path.join(tmp, PASSLOG_NAME)
            commands = encode_commands(plan, part_path, passlog)
            for pass_index, cmd in enumerate(commands):
                offset = pass_index * plan.duration
                callback = _offset_progress(on_progress, offset)
                logging.info(
                    "encoding %s (pass %d/%d)",
                    plan.source,
                    pass_index + 1,
                    len(commands),
                )
                run_ffmpeg(cmd, callback)
        os.replace(part_path, plan.output)
    finally:
        if os.path.exists(part_path):
            try:
                os.remove(part_path)
            except FileNotFoundError:
                pass
    return plan.output


# --------------------------------------------------------------------- cli


def check_preconditions(input_path: str, output_dir: str) -> None:
    for tool in ("ffmpeg", "ffprobe"):
        if shutil.which(tool) is None:
            raise PreconditionError(f"{tool} is not installed")
    if not os.path.isfile(input_path):
        raise PreconditionError(f"File does not exist: {input_path}")
    if not os.path.isdir(output_dir):
        raise PreconditionError(f"Invalid path: {output_dir}")


def _parse_target_size(value: Optional[str]) -> float:
    if value is None:
        raise ConfigurationError("a target size is required (-s/--size)")
    try:
        size = float(value)
    except ValueError:
        raise ConfigurationError(f"Invalid size: {value}") from None
    if size < 0 or size != size:
        raise ConfigurationError(f"Invalid size: {value}")
    return size


def _parse_audio_bitrate(value: Optional[str]) -> int:
    if not value:
        return 0
    try:
        bps = kbps_to_bps(value)
    except ValueError:
        raise ConfigurationError(f"Invalid bitrate: {value}") from None
    if bps < 0 or bps >= MAX_BITRATE:
        raise ConfigurationError(f"Invalid bitrate: {value}")
    return bps


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="targetsize",
        description="Converts a video/audio file to a specified file size",
    )
    ap.add_argument(
        "-i",
        "--input",
        "-f",
        "--file",
        dest="input",
        default=os.getenv("TARGETSIZE_INPUT"),
        help="Path to file.",
    )
    ap.add_argument(
        "-o",
        "--output",
        default=os.getenv("TARGETSIZE_OUTPUT_DIR") or os.getcwd(),
        help="Directory to output the file to (default: current directory).",
    )
    ap.add_argument(
        "-s",
        "--size",
        default=os.getenv("TARGETSIZE_SIZE"),
        help="Target file size (MiB).",
    )
    ap.add_argument(
        "-v",
        "--video",
        default=os.getenv("TARGETSIZE_VIDEO_CODEC"),
        help=f"Video codec to use. Choices: {', '.join(_VIDEO_ALIASES)}.",
    )
    ap.add_argument(
        "-a",
        "--audio",
        default=os.getenv("TARGETSIZE_AUDIO_CODEC"),
        help=f"Audio codec to use. Choices: {', '.join(_AUDIO_ALIASES)}.",
    )
    ap.add_argument(
        "-b",
        "--bitrate",
        default=os.getenv("TARGETSIZE_AUDIO_BITRATE", "0"),
        help="Audio bitrate to use (e.g., 128k); 0 keeps the source bitrate.",
    )
    ap.add_argument(
        "-r",
        "--resolution",
        default=os.getenv("TARGETSIZE_RESOLUTION"),
        help=f"Output resolution. Choices: {', '.join(RESOLUTION_LABELS)}.",
    )
    ap.add_argument(
        "-p", "--print", action="store_true", help="Prints FFmpeg arguments."
    )
    ap.add_argument(
        "-np",
        "--no-progress",
        action="store_true",
        help="Disables progress bar.",
    )
    ap.add_argument(
        "-of",
        "--optimized-filters",
        action="store_true",
        help="Applies optimized encoder settings for VP9 and AV1.",
    )
    ap.add_argument(
        "--overwrite",
        action="store_true",
        help="Replace an existing output file without asking.",
    )
    ap.add_argument(
        "--verbose",
        action="count",
        default=None,
        help="Increase verbosity (--verbose, --verbose --verbose).",
    )
    return ap


def _progress_printer(plan: EncodePlan) -> Callable[[float], None]:
    tracker = ProgressTracker(plan.duration, plan.two_pass)

    def show(elapsed: float) -> None:
        update = tracker.on_sample(elapsed)
        sys.stderr.write("\r" + render_progress(update) + "  ")
        sys.stderr.flush()

    return show


def _log_plan(info: MediaInfo, plan: EncodePlan, options: EncodeOptions) -> None:
    logging.info(
        "source: %s (%.2f s; video=%s; audio=%s)",
        info.path,
        info.duration,
        info.video.codec if info.video else "none",
        info.audio.codec if info.audio else "none",
    )
    if plan.video is not None:
        logging.info(
            "video: %s via %s%s",
            plan.video.codec.name,
            plan.video.encoder,
            f" at {plan.video.size[0]}x{plan.video.size[1]}" if plan.video.size else "",
        )
    if plan.audio is not None:
        logging.info("audio: %s via %s", plan.audio.codec.name, plan.audio.encoder)
    if plan.bitrate is not None:
        logging.info("bitrate calculation steps:")
        logging.info("  target size        : %s MiB", options.target_size)
        logging.info("  duration (whole s) : %d", int(info.duration))
        logging.info("  desired bitrate    : %.2f", plan.bitrate.desired_bps)
        logging.info("  - audio bitrate    : %s", f"{plan.bitrate.audio_bps:,}")
        logging.info("  video bitrate      : %s", f"{plan.bitrate.video_bps:,}")
    logging.info("output: %s", plan.output)


def main(argv: Optional[Sequence[str]] = None) -> None:
    ap = build_parser()
    if argv is None:
        argv = sys.argv[1:]
    if not argv and not os.getenv("TARGETSIZE_INPUT"):
        ap.print_help()
        return
    args = ap.parse_args(argv)
    if args.verbose is None:
        env_verbose = os.getenv("TARGETSIZE_VERBOSE", "0")
        try:
            args.verbose = max(0, int(env_verbose))
        except ValueError:
            logging.error("TARGETSIZE_VERBOSE must be an integer, got %r", env_verbose)
            sys.exit(1)

    level = (
        logging.WARNING
        if args.verbose == 0
        else (logging.INFO if args.verbose == 1 else logging.DEBUG)
    )
    global VERBOSE_LEVEL
    VERBOSE_LEVEL = args.verbose
    logging.basicConfig(
        level=level, stream=sys.stderr, format="%(levelname)s: %(message)s"
    )

    try:
        if not args.input:
            raise ConfigurationError("an input file is required (-i/--input)")
        check_preconditions(args.input, args.output)
        if args.resolution:
            parse_resolution(args.resolution)
        options = EncodeOptions(
            target_size=_parse_target_size(args.size),
            output_dir=args.output,
            video_codec=resolve_video_codec(args.video),
            audio_codec=resolve_audio_codec(args.audio),
            audio_bitrate=_parse_audio_bitrate(args.bitrate),
            resolution=args.resolution,
            optimized_filters=args.optimized_filters,
        )

        info = probe_media(args.input)
        plan = build_plan(info, options)
        _log_plan(info, plan, options)

        if args.print:
            part_path = part_path_for(plan.output)
            for cmd in encode_commands(plan, part_path, PASSLOG_NAME):
                print(" ".join(shlex.quote(a) for a in cmd))

        confirm_overwrite(plan.output, assume_yes=args.overwrite)

        on_progress = None if args.no_progress else _progress_printer(plan)
        try:
            output = run_encode(plan, on_progress)
        finally:
            if on_progress is not None:
                sys.stderr.write("\n")
    except UserAbort:
        return
    except KeyboardInterrupt:
        logging.error("interrupted")
        sys.exit(1)
    except TargetSizeError as exc:
        logging.error("%s", exc)
        sys.exit(1)

    print(f"\nDone\nOutput file: {output}")


if __name__ == "__main__":
    main()
