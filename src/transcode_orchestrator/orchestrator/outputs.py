"""Deterministic output locations derived from an input reference."""

from __future__ import annotations

from enum import Enum
from pathlib import PurePosixPath

RENDITIONS: tuple[str, ...] = ("1080p", "720p", "480p", "360p")
MASTER_PLAYLIST = "master.m3u8"


class NamespaceMatch(str, Enum):
    """How output namespaces are associated with tracked jobs."""

    EXACT = "exact"
    SUBSTRING = "substring"


def output_namespace(input_ref: str) -> str:
    """Return the output namespace of an input key: ``raw/a.mp4`` -> ``a``."""

    name = PurePosixPath(input_ref.strip().rstrip("/")).name
    stem = name.rsplit(".", 1)[0] if "." in name.lstrip(".") else name
    return stem or name


def derive_outputs(input_ref: str, *, output_prefix: str = "output/") -> dict[str, str]:
    """Map artifact names to storage keys for a completed transcode."""

    base = f"{_normalize_prefix(output_prefix)}{output_namespace(input_ref)}/"
    outputs = {"master": f"{base}{MASTER_PLAYLIST}"}
    for rendition in RENDITIONS:
        outputs[rendition] = f"{base}{rendition}.m3u8"
    return outputs


def namespace_from_prefix(prefix: str, *, output_prefix: str = "output/") -> str:
    """Extract the namespace from a listed common prefix like ``output/xyz/``."""

    normalized = _normalize_prefix(output_prefix)
    value = prefix[len(normalized) :] if prefix.startswith(normalized) else prefix
    return value.strip("/")


def reconstruct_input_ref(
    namespace: str,
    *,
    raw_prefix: str = "raw/",
    extension: str = ".mp4",
) -> str:
    return f"{_normalize_prefix(raw_prefix)}{namespace}{extension}"


def matches_namespace(input_ref: str, namespace: str, *, mode: NamespaceMatch) -> bool:
    if mode is NamespaceMatch.SUBSTRING:
        return namespace in input_ref
    return output_namespace(input_ref) == namespace


def _normalize_prefix(prefix: str) -> str:
    stripped = prefix.strip("/")
    return f"{stripped}/" if stripped else ""
