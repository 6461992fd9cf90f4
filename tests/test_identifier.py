from __future__ import annotations

import argparse

from pathlib import Path

import sys

import cv2
import numpy as np
import pytest

repo_root = Path(__file__).resolve().parents[1]
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

import face_identifier

from facematch.face.errors import EmbeddingExtractionError
from facematch.face.identifier import FaceIdentifier, IdentifierConfig
from facematch.face.matcher import MatcherConfig
from facematch.face.preprocess import FaceLocalization

RED = (0, 0, 255)
BLUE = (255, 0, 0)
GREEN = (0, 255, 0)


class _DummyEmbedder:
    """Mean BGR color of the face as a 3-d embedding."""

    input_size = (8, 8)

    def __init__(self):
        self.calls = 0

    def embed(self, image):
        self.calls += 1
        arr = np.asarray(image, dtype=np.float32)
        assert arr.shape == (8, 8, 3)
        assert 0.0 <= float(arr.min()) and float(arr.max()) <= 1.0
        return arr.reshape(-1, 3).mean(axis=0)


def _solid(color, size=(20, 20)):
    img = np.zeros((size[1], size[0], 3), dtype=np.uint8)
    img[:, :] = color
    return img


def _make_gallery_dir(root: Path) -> Path:
    for label, color, n in (("alice", RED, 2), ("bob", BLUE, 3)):
        person = root / label
        person.mkdir(parents=True)
        for i in range(n):
            assert cv2.imwrite(str(person / f"{i}.png"), _solid(color))
    return root


def _two_face_image():
    image = np.zeros((40, 80, 3), dtype=np.uint8)
    image[:, :40] = RED
    image[:, 40:] = BLUE
    return image


def test_enroll_from_directory(tmp_path: Path):
    identifier = FaceIdentifier(_DummyEmbedder(), IdentifierConfig(threshold=0.5, top_k=2))

    added = identifier.enroll(_make_gallery_dir(tmp_path / "gallery"))

    assert added == 5
    info = identifier.gallery_info()
    assert info["labels"] == ["alice", "bob"]
    assert info["dim"] == 3
    assert info["stats"]["bob"]["count"] == 3


def test_identify_single_face(tmp_path: Path):
    identifier = FaceIdentifier(_DummyEmbedder(), IdentifierConfig(threshold=0.5, top_k=2))
    identifier.enroll(_make_gallery_dir(tmp_path / "gallery"))

    pred = identifier.identify_face(_solid(RED, size=(33, 47)), location="crop")

    assert pred.label == "alice"
    assert pred.score == pytest.approx(1.0)
    assert pred.location == "crop"
    assert identifier.identify_face(_solid(GREEN)) is None


def test_identify_faces_keeps_box_order(tmp_path: Path):
    identifier = FaceIdentifier(_DummyEmbedder(), IdentifierConfig(threshold=0.5, top_k=2))
    identifier.enroll(_make_gallery_dir(tmp_path / "gallery"))
    image = _two_face_image()
    image[30:, 60:] = GREEN
    boxes = [
        FaceLocalization.from_xywh(45, 0, 30, 25),
        FaceLocalization.from_xywh(5, 5, 30, 30),
        FaceLocalization.from_xywh(62, 32, 100, 100),
    ]

    results = identifier.identify_faces(image, boxes)

    assert [r.label if r else None for r in results] == ["bob", "alice", None]
    assert results[0].location is boxes[0]
    assert results[1].location is boxes[1]


def test_embed_faces_one_per_box():
    embedder = _DummyEmbedder()
    identifier = FaceIdentifier(embedder)
    boxes = [FaceLocalization.from_xywh(0, 0, 40, 40), FaceLocalization.from_xywh(40, 0, 40, 40)]

    embeddings = identifier.embed_faces(_two_face_image(), boxes)

    assert embedder.calls == 2
    assert embeddings[0] == pytest.approx([0.0, 0.0, 1.0])
    assert embeddings[1] == pytest.approx([1.0, 0.0, 0.0])


def test_enroll_failure_aborts_unless_skipping():
    class _Flaky(_DummyEmbedder):
        def embed(self, image):
            emb = super().embed(image)
            if emb[1] > 0.5:
                raise EmbeddingExtractionError("no face found")
            return emb

    refs = [("alice", _solid(RED, (8, 8)) / 255.0), ("ghost", _solid(GREEN, (8, 8)) / 255.0)]

    strict = FaceIdentifier(_Flaky())
    with pytest.raises(EmbeddingExtractionError):
        strict.enroll_images(refs)

    lenient = FaceIdentifier(_Flaky(), IdentifierConfig(skip_failed_references=True))
    assert lenient.enroll_images(refs) == 1
    assert lenient.gallery.labels == ["alice"]


def test_unknown_face_against_empty_gallery():
    identifier = FaceIdentifier(_DummyEmbedder())
    assert identifier.identify_face(_solid(RED)) is None


def test_cli_parse_box():
    loc = face_identifier.parse_box("1,2,3,4")
    assert (loc.left_x, loc.left_y, loc.right_x, loc.right_y) == (1, 2, 4, 6)
    with pytest.raises(argparse.ArgumentTypeError):
        face_identifier.parse_box("1,2,3")
    with pytest.raises(argparse.ArgumentTypeError):
        face_identifier.parse_box("1,2,0,4")


def test_cli_main(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture):
    gallery_dir = _make_gallery_dir(tmp_path / "gallery")
    image_path = tmp_path / "frame.png"
    assert cv2.imwrite(str(image_path), _two_face_image())
    monkeypatch.setattr(face_identifier, "InsightFaceEmbedder", lambda **kwargs: _DummyEmbedder())

    with caplog.at_level("INFO"):
        code = face_identifier.main(
            [
                str(image_path),
                "--gallery",
                str(gallery_dir),
                "--threshold",
                "0.5",
                "--box",
                "0,0,40,40",
                "--box",
                "40,0,40,40",
            ]
        )

    assert code == 0
    text = caplog.text
    assert "人脸 1 (0,0,40,40): alice" in text
    assert "人脸 2 (40,0,40,40): bob" in text


def test_cli_debug_lists_candidates_once_per_face(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
):
    gallery_dir = _make_gallery_dir(tmp_path / "gallery")
    image_path = tmp_path / "frame.png"
    assert cv2.imwrite(str(image_path), _two_face_image())
    monkeypatch.setattr(face_identifier, "InsightFaceEmbedder", lambda **kwargs: _DummyEmbedder())

    with caplog.at_level("DEBUG"):
        code = face_identifier.main(
            [str(image_path), "-g", str(gallery_dir), "-t", "0.5", "-b", "0,0,40,40", "-b", "40,0,40,40", "--debug"]
        )

    assert code == 0
    candidate_lines = [r.getMessage() for r in caplog.records if "候选" in r.getMessage()]
    assert len(candidate_lines) == 2
    assert candidate_lines[0].startswith("人脸 1 候选: [('alice'")
    assert "人脸 2 (40,0,40,40): bob" in caplog.text


def test_threshold_defaults_agree():
    cli_default = face_identifier.build_parser().get_default("threshold")
    assert IdentifierConfig().threshold == MatcherConfig().threshold == cli_default


def test_cli_unreadable_image(tmp_path: Path):
    with pytest.raises(ValueError):
        face_identifier.main([str(tmp_path / "missing.png"), "--gallery", str(tmp_path)])
