#!/usr/bin/env python3
"""
FFmpeg Metadata Integration

Runs ``ffprobe`` as a subprocess and turns its JSON report into typed media
metadata: container format, duration, bit rate, size, tags and the video,
audio and subtitle streams.
"""

import asyncio
import json
import logging
import os
import time
from typing import Any, Dict, List, Optional, Tuple

from pydantic import Field
from pydantic_settings import SettingsConfigDict

from observability.metrics.client_metrics import ClientMetrics, get_metrics
from observability.tracing.client_tracer import ClientTracer, get_client_tracer

from .errors import (
    ConfigurationError,
    IntegrationError,
    NotFoundError,
    RequestTimeoutError,
)
from .models import VendorModel
from .settings import IntegrationSettings

logger = logging.getLogger(__name__)

PROBE_ARGS = ["-v", "error", "-print_format", "json", "-show_format", "-show_streams"]


class FFprobeError(IntegrationError):
    """ffprobe exited with a non-zero status or produced unusable output."""


class FFprobeNotFoundError(ConfigurationError):
    """The ffprobe binary could not be executed."""


class FFprobeTimeoutError(RequestTimeoutError):
    """ffprobe did not finish within the configured timeout."""


class FFmpegSettings(IntegrationSettings):
    """FFmpeg settings (``FFMPEG_`` environment prefix)."""

    model_config = SettingsConfigDict(env_prefix="FFMPEG_", env_file=".env", extra="ignore")

    ffprobe_path: str = Field(default="ffprobe", description="ffprobe executable")
    probe_timeout: float = Field(default=30.0, description="Seconds before a probe is killed")
    max_concurrent: int = Field(default=4, description="Concurrent ffprobe processes")

    def collect_issues(self) -> List[str]:
        issues = super().collect_issues()
        if self.probe_timeout <= 0:
            issues.append(f"Invalid probe timeout: {self.probe_timeout}")
        if self.max_concurrent <= 0:
            issues.append(f"Invalid max concurrent probes: {self.max_concurrent}")
        return issues


def parse_frame_rate(value: Optional[str]) -> Optional[float]:
    """Parse ``30000/1001`` or ``25`` style rates; ``0/0`` means unknown."""
    if not value:
        return None
    numerator, _, denominator = value.partition("/")
    try:
        num = float(numerator)
        den = float(denominator) if denominator else 1.0
    except ValueError:
        return None
    if den == 0 or num == 0:
        return None
    return round(num / den, 3)


def _float(value: Any) -> Optional[float]:
    try:
        return float(value) if value not in (None, "", "N/A") else None
    except (TypeError, ValueError):
        return None


def _int(value: Any) -> Optional[int]:
    number = _float(value)
    return int(number) if number is not None else None


class MediaFormat(VendorModel):
    filename: Optional[str] = None
    format_name: Optional[str] = None
    format_long_name: Optional[str] = None
    duration: Optional[float] = None
    size: Optional[int] = None
    bit_rate: Optional[int] = None
    nb_streams: int = 0
    tags: Dict[str, str] = Field(default_factory=dict)


class StreamInfo(VendorModel):
    index: int = 0
    codec_type: Optional[str] = None
    codec_name: Optional[str] = None
    codec_long_name: Optional[str] = None
    profile: Optional[str] = None
    bit_rate: Optional[int] = None
    duration: Optional[float] = None
    tags: Dict[str, str] = Field(default_factory=dict)

    @property
    def language(self) -> Optional[str]:
        return self.tags.get("language")


class VideoStream(StreamInfo):
    width: int = 0
    height: int = 0
    frame_rate: Optional[float] = None
    avg_frame_rate: Optional[float] = None
    pix_fmt: Optional[str] = None
    display_aspect_ratio: Optional[str] = None


class AudioStream(StreamInfo):
    sample_rate: Optional[int] = None
    channels: int = 0
    channel_layout: Optional[str] = None


class SubtitleStream(StreamInfo):
    pass


class MediaMetadata(VendorModel):
    format: MediaFormat
    video_streams: List[VideoStream] = Field(default_factory=list)
    audio_streams: List[AudioStream] = Field(default_factory=list)
    subtitle_streams: List[SubtitleStream] = Field(default_factory=list)

    @property
    def duration(self) -> Optional[float]:
        if self.format.duration is not None:
            return self.format.duration
        durations = [s.duration for s in self.video_streams + self.audio_streams if s.duration]
        return max(durations) if durations else None

    @property
    def bit_rate(self) -> Optional[int]:
        return self.format.bit_rate

    @property
    def size(self) -> Optional[int]:
        return self.format.size

    @property
    def tags(self) -> Dict[str, str]:
        return self.format.tags

    @classmethod
    def from_probe(cls, data: Dict[str, Any]) -> "MediaMetadata":
        raw_format = data.get("format") or {}
        metadata = cls(
            format=MediaFormat(
                filename=raw_format.get("filename"),
                format_name=raw_format.get("format_name"),
                format_long_name=raw_format.get("format_long_name"),
                duration=_float(raw_format.get("duration")),
                size=_int(raw_format.get("size")),
                bit_rate=_int(raw_format.get("bit_rate")),
                nb_streams=_int(raw_format.get("nb_streams")) or 0,
                tags=raw_format.get("tags") or {},
            )
        )
        for raw in data.get("streams") or []:
            base = {
                "index": raw.get("index", 0),
                "codec_type": raw.get("codec_type"),
                "codec_name": raw.get("codec_name"),
                "codec_long_name": raw.get("codec_long_name"),
                "profile": raw.get("profile"),
                "bit_rate": _int(raw.get("bit_rate")),
                "duration": _float(raw.get("duration")),
                "tags": raw.get("tags") or {},
            }
            codec_type = raw.get("codec_type")
            if codec_type == "video":
                metadata.video_streams.append(
                    VideoStream(
                        **base,
                        width=raw.get("width", 0),
                        height=raw.get("height", 0),
                        frame_rate=parse_frame_rate(raw.get("r_frame_rate")),
                        avg_frame_rate=parse_frame_rate(raw.get("avg_frame_rate")),
                        pix_fmt=raw.get("pix_fmt"),
                        display_aspect_ratio=raw.get("display_aspect_ratio"),
                    )
                )
            elif codec_type == "audio":
                metadata.audio_streams.append(
                    AudioStream(
                        **base,
                        sample_rate=_int(raw.get("sample_rate")),
                        channels=raw.get("channels", 0),
                        channel_layout=raw.get("channel_layout"),
                    )
                )
            elif codec_type == "subtitle":
                metadata.subtitle_streams.append(SubtitleStream(**base))
        return metadata


class FFprobeClient:
    """
    Async wrapper around the ffprobe executable.

    Probes run in subprocesses bounded by ``max_concurrent`` and are killed
    when they exceed ``probe_timeout``.
    """

    provider = "ffmpeg"

    def __init__(
        self,
        settings: Optional[FFmpegSettings] = None,
        metrics: Optional[ClientMetrics] = None,
        tracer: Optional[ClientTracer] = None,
    ):
        self.settings = settings or FFmpegSettings()
        self.settings.validate_configuration()
        self.metrics = metrics or get_metrics()
        self.tracer = tracer or get_client_tracer()
        self._semaphore = asyncio.Semaphore(self.settings.max_concurrent)

    @classmethod
    def from_env(cls, **overrides) -> "FFprobeClient":
        return cls(FFmpegSettings.from_env(**overrides))

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        pass

    async def _run(self, args: List[str], timeout: float) -> Tuple[int, bytes, bytes]:
        try:
            process = await asyncio.create_subprocess_exec(
                self.settings.ffprobe_path,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise FFprobeNotFoundError(
                f"ffprobe not found at {self.settings.ffprobe_path}", provider=self.provider
            ) from e
        except PermissionError as e:
            raise FFprobeNotFoundError(
                f"ffprobe at {self.settings.ffprobe_path} is not executable",
                provider=self.provider,
            ) from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise FFprobeTimeoutError(
                f"ffprobe timed out after {timeout}s", provider=self.provider
            )
        return process.returncode, stdout, stderr

    async def probe(self, source: str, timeout: Optional[float] = None) -> MediaMetadata:
        """
        Probe a local file or URL.

        Raises:
            NotFoundError: Local file does not exist
            FFprobeNotFoundError: ffprobe binary missing
            FFprobeTimeoutError: Probe exceeded the timeout
            FFprobeError: Non-zero exit or invalid JSON output
        """
        if "://" not in source and not os.path.exists(source):
            raise NotFoundError(f"Media file not found: {source}", provider=self.provider)

        timeout = timeout or self.settings.probe_timeout
        start_time = time.monotonic()
        status = None
        async with self.tracer.trace_request(self.provider, "probe", "EXEC", source):
            try:
                async with self._semaphore:
                    returncode, stdout, stderr = await self._run([*PROBE_ARGS, source], timeout)

                if returncode != 0:
                    message = stderr.decode("utf-8", "replace").strip() or f"exit status {returncode}"
                    raise FFprobeError(
                        f"ffprobe failed for {source}: {message}",
                        provider=self.provider,
                        response_data={"returncode": returncode},
                    )
                try:
                    data = json.loads(stdout.decode("utf-8", "replace") or "{}")
                except json.JSONDecodeError as e:
                    raise FFprobeError(
                        f"ffprobe returned invalid JSON for {source}", provider=self.provider
                    ) from e
                # Exit status 0 is recorded as the success status
                status = 0
            finally:
                self.metrics.record_request(
                    self.provider, "probe", "EXEC", status, time.monotonic() - start_time
                )

        metadata = MediaMetadata.from_probe(data)
        logger.debug(
            "Probed %s: %s streams, %.2fs",
            source,
            len(metadata.video_streams) + len(metadata.audio_streams),
            metadata.duration or 0.0,
        )
        return metadata

    async def get_duration(self, source: str) -> Optional[float]:
        return (await self.probe(source)).duration

    async def get_resolution(self, source: str) -> Optional[Tuple[int, int]]:
        """Width and height of the first video stream."""
        metadata = await self.probe(source)
        if not metadata.video_streams:
            return None
        stream = metadata.video_streams[0]
        return stream.width, stream.height

    async def has_audio(self, source: str) -> bool:
        return bool((await self.probe(source)).audio_streams)

    async def health_check(self) -> Dict[str, Any]:
        start_time = time.monotonic()
        try:
            returncode, stdout, _ = await self._run(["-version"], self.settings.probe_timeout)
        except IntegrationError as e:
            return {
                "provider": self.provider,
                "status": "unhealthy",
                "error": str(e),
                "latency_seconds": round(time.monotonic() - start_time, 3),
            }
        first_line = stdout.decode("utf-8", "replace").splitlines()[:1]
        return {
            "provider": self.provider,
            "status": "healthy" if returncode == 0 else "unhealthy",
            "latency_seconds": round(time.monotonic() - start_time, 3),
            "details": {"version": first_line[0] if first_line else None},
        }
