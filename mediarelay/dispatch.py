"""Request validation and job classification."""
from __future__ import annotations

import re
from typing import Iterable, Optional
from urllib.parse import parse_qs, urlparse

from .errors import ValidationError
from .models import JobKind, JobSpec, MediaFormat

DEFAULT_QUALITY = {MediaFormat.VIDEO: "720", MediaFormat.AUDIO: "192"}
DEFAULT_PROCESS_HEIGHT = "480"
QUALITY_SUFFIX = {MediaFormat.VIDEO: "p", MediaFormat.AUDIO: "k"}

_QUALITY_RE = re.compile(r"^(\d{1,5})([a-z]?)$")


def validate_url(url: Optional[str], allowed_domains: Iterable[str] = ()) -> str:
    if url is None or not url.strip():
        raise ValidationError("No URL provided.")
    url = url.strip()
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise ValidationError("Invalid URL.")
    domains = [domain.lower().lstrip(".") for domain in allowed_domains if domain]
    if domains:
        host = parsed.hostname.lower()
        if not any(host == domain or host.endswith("." + domain) for domain in domains):
            raise ValidationError("URL domain is not supported.")
    return url


def parse_format(value: Optional[str]) -> MediaFormat:
    if value is None or not value.strip():
        return MediaFormat.VIDEO
    try:
        return MediaFormat(value.strip().lower())
    except ValueError:
        raise ValidationError("Invalid format. Use one of: video, audio.") from None


def parse_quality(value: Optional[str], media_format: MediaFormat, default: Optional[str] = None) -> str:
    """Digits, optionally followed by ``p`` (video) or ``k`` (audio)."""
    if value is None or not value.strip():
        return default or DEFAULT_QUALITY[media_format]
    match = _QUALITY_RE.match(value.strip().lower())
    if not match or match.group(2) not in ("", QUALITY_SUFFIX[media_format]) or int(match.group(1)) == 0:
        raise ValidationError("Invalid quality.")
    return str(int(match.group(1)))


def is_playlist_url(url: str) -> bool:
    parsed = urlparse(url)
    if "list" in parse_qs(parsed.query):
        return True
    return "/playlist" in parsed.path.lower()


def video_job(url: Optional[str], quality: Optional[str], allowed_domains: Iterable[str] = ()) -> JobSpec:
    return JobSpec(
        kind=JobKind.SINGLE_VIDEO,
        format=MediaFormat.VIDEO,
        quality=parse_quality(quality, MediaFormat.VIDEO),
        source_url=validate_url(url, allowed_domains),
    )


def audio_job(url: Optional[str], quality: Optional[str], allowed_domains: Iterable[str] = ()) -> JobSpec:
    return JobSpec(
        kind=JobKind.SINGLE_AUDIO,
        format=MediaFormat.AUDIO,
        quality=parse_quality(quality, MediaFormat.AUDIO),
        source_url=validate_url(url, allowed_domains),
    )


def playlist_job(
    url: Optional[str],
    media_format: Optional[str],
    quality: Optional[str],
    allowed_domains: Iterable[str] = (),
) -> JobSpec:
    source_url = validate_url(url, allowed_domains)
    fmt = parse_format(media_format)
    return JobSpec(kind=JobKind.PLAYLIST, format=fmt, quality=parse_quality(quality, fmt), source_url=source_url)


def process_job(url: Optional[str], quality: Optional[str], allowed_domains: Iterable[str] = ()) -> JobSpec:
    return JobSpec(
        kind=JobKind.PROCESS,
        format=MediaFormat.VIDEO,
        quality=parse_quality(quality, MediaFormat.VIDEO, default=DEFAULT_PROCESS_HEIGHT),
        source_url=validate_url(url, allowed_domains),
    )


def classify(
    url: Optional[str],
    media_format: Optional[str],
    quality: Optional[str],
    allowed_domains: Iterable[str] = (),
) -> JobSpec:
    """Pick video, audio or playlist for the combined ``/download`` endpoint."""
    source_url = validate_url(url, allowed_domains)
    if is_playlist_url(source_url):
        return playlist_job(source_url, media_format, quality, allowed_domains)
    if parse_format(media_format) is MediaFormat.AUDIO:
        return audio_job(source_url, quality, allowed_domains)
    return video_job(source_url, quality, allowed_domains)
