from __future__ import annotations

import pytest

from sound_design_pipeline.media.loudness import FfmpegLoudnessNormalizer
from sound_design_pipeline.media.upload import LocalMediaUploader
from sound_design_pipeline.pipeline.collaborators import (
    CollaboratorsNotConfigured,
    load_collaborators,
    with_default_media,
)
from tests._helpers.collaborators import FakeUploader, make_collaborators


def test_load_factory_keeps_supplied_uploader() -> None:
    c = load_collaborators("tests._helpers.collaborators:make_collaborators", normalize=False)
    assert isinstance(c.uploader, FakeUploader)
    assert c.normalizer is None


def test_default_media_fills_empty_slots() -> None:
    c = with_default_media(make_collaborators(uploader=None), normalize=True)
    assert isinstance(c.uploader, LocalMediaUploader)
    assert isinstance(c.normalizer, FfmpegLoudnessNormalizer)


@pytest.mark.parametrize(
    "path",
    ["", "   ", "no_colon_here", "tests._helpers.collaborators:missing_factory", "nope.nope:build"],
)
def test_bad_factory_paths(path: str) -> None:
    with pytest.raises(CollaboratorsNotConfigured):
        load_collaborators(path)


def test_factory_must_return_bundle() -> None:
    with pytest.raises(CollaboratorsNotConfigured, match="expected Collaborators"):
        load_collaborators("tests._helpers.collaborators:four_actions")
