from __future__ import annotations

import allure
import pytest

from transcode_orchestrator.orchestrator.outputs import (
    NamespaceMatch,
    derive_outputs,
    matches_namespace,
    namespace_from_prefix,
    output_namespace,
    reconstruct_input_ref,
)

pytestmark = [
    allure.epic("Job Orchestration"),
    allure.feature("Output Layout"),
]


@pytest.mark.parametrize(
    ("input_ref", "namespace"),
    [
        ("raw/a.mp4", "a"),
        ("raw/nested/dir/clip.final.mov", "clip.final"),
        ("noext", "noext"),
        ("raw/.hidden", ".hidden"),
    ],
)
def test_output_namespace_is_basename_without_extension(input_ref: str, namespace: str) -> None:
    assert output_namespace(input_ref) == namespace


def test_derive_outputs_is_deterministic_hls_ladder() -> None:
    outputs = derive_outputs("raw/a.mp4")

    assert outputs == {
        "master": "output/a/master.m3u8",
        "1080p": "output/a/1080p.m3u8",
        "720p": "output/a/720p.m3u8",
        "480p": "output/a/480p.m3u8",
        "360p": "output/a/360p.m3u8",
    }
    assert derive_outputs("raw/a.mp4") == outputs
    assert derive_outputs("raw/a.mp4", output_prefix="/hls")["master"] == "hls/a/master.m3u8"


def test_namespace_and_input_ref_reconstruction() -> None:
    assert namespace_from_prefix("output/xyz/") == "xyz"
    assert namespace_from_prefix("xyz/", output_prefix="") == "xyz"
    assert reconstruct_input_ref("xyz") == "raw/xyz.mp4"
    assert output_namespace(reconstruct_input_ref("xyz")) == "xyz"


def test_matching_modes() -> None:
    assert matches_namespace("raw/a.mp4", "a", mode=NamespaceMatch.EXACT)
    assert not matches_namespace("raw/abc.mp4", "a", mode=NamespaceMatch.EXACT)
    assert matches_namespace("raw/abc.mp4", "a", mode=NamespaceMatch.SUBSTRING)
