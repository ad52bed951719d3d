from __future__ import annotations

import json
from pathlib import Path

from PIL import Image

from localcaption import cli
from localcaption.captioning.orchestrator import CaptionOrchestrator

from conftest import FakeBackend, write_artifacts


def _base_args(tmp_path: Path, models_dir: Path) -> list[str]:
    return [
        "--settings",
        str(tmp_path / "missing-settings.yaml"),
        "--models-dir",
        str(models_dir),
        "--log-dir",
        "",
    ]


def _use_fake_backend(monkeypatch, catalog) -> FakeBackend:
    backend = FakeBackend()
    monkeypatch.setattr(
        cli,
        "_build_orchestrator",
        lambda settings: CaptionOrchestrator.from_settings(
            settings, catalog=catalog, backend=backend
        ),
    )
    return backend


def test_models_command_lists_default_variants(tmp_path: Path, capsys) -> None:
    rc = cli.main(_base_args(tmp_path, tmp_path / "models") + ["models"])
    assert rc == 0
    rows = json.loads(capsys.readouterr().out)
    assert [row["id"] for row in rows] == ["llava-v1.6-34b", "qwen2.5-vl-7b", "qwen3-vl-8b"]
    assert all(row["state"] == "not_present" for row in rows)


def test_unknown_variant_is_a_usage_error(tmp_path: Path) -> None:
    rc = cli.main(_base_args(tmp_path, tmp_path / "models") + ["download", "nope"])
    assert rc == 2


def test_caption_command_writes_captions_for_folder(
    tmp_path: Path, monkeypatch, capsys, manager, catalog
) -> None:
    write_artifacts(manager, "tiny-llava")
    backend = _use_fake_backend(monkeypatch, catalog)
    images = tmp_path / "images"
    images.mkdir()
    for name in ("one", "two"):
        Image.effect_noise((48, 48), 64).convert("RGB").save(images / f"{name}.jpg")
    (images / "notes.md").write_text("not an image", encoding="utf-8")

    rc = cli.main(
        _base_args(tmp_path, manager.models_dir)
        + ["caption", "tiny-llava", str(images), "--trigger", "sks", "--blacklist", "red, car"]
    )

    assert rc == 0
    rows = json.loads(capsys.readouterr().out)
    assert [row["status"] for row in rows] == ["succeeded", "succeeded"]
    assert (images / "one.txt").read_text(encoding="utf-8") == "sks, A parked"
    assert len(backend.prompts) == 2
    assert len(backend.released) == 3


def test_caption_command_rejects_bad_temperature(
    tmp_path: Path, monkeypatch, manager, catalog
) -> None:
    _use_fake_backend(monkeypatch, catalog)
    rc = cli.main(
        _base_args(tmp_path, manager.models_dir)
        + ["caption", "tiny-llava", str(tmp_path / "a.png"), "--temperature", "5"]
    )
    assert rc == 2


def test_caption_command_fails_when_model_missing(
    tmp_path: Path, monkeypatch, manager, catalog
) -> None:
    _use_fake_backend(monkeypatch, catalog)
    rc = cli.main(
        _base_args(tmp_path, manager.models_dir)
        + ["caption", "tiny-qwen", str(tmp_path / "a.png")]
    )
    assert rc == 1
