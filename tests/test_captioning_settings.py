from __future__ import annotations

from pathlib import Path


def test_load_settings_defaults_when_file_missing(tmp_path: Path, monkeypatch) -> None:
    from localcaption.utils import settings as mod

    for env_key in mod._ENV_OVERRIDES:
        monkeypatch.delenv(env_key, raising=False)
    monkeypatch.setattr(mod, "_SETTINGS_DIR", tmp_path)
    monkeypatch.setattr(mod, "_SETTINGS_FILE", tmp_path / "settings.yaml")

    settings = mod.load_settings()
    assert settings.context_size == 4096
    assert settings.gpu_layers == -1
    assert settings.max_tokens == 512
    assert settings.default_temperature == 0.7
    assert settings.models_path == tmp_path / "models"


def test_yaml_values_and_env_overrides(tmp_path: Path, monkeypatch) -> None:
    from localcaption.utils import settings as mod

    path = tmp_path / "custom.yaml"
    path.write_text(
        "models_dir: {models}\ncontext_size: 8192\nmax_tokens: 128\nunknown_key: 1\n".format(
            models=tmp_path / "store"
        ),
        encoding="utf-8",
    )
    monkeypatch.delenv("LOCALCAPTION_MODELS_DIR", raising=False)
    monkeypatch.setenv("LOCALCAPTION_GPU_LAYERS", "12")
    monkeypatch.setenv("LOCALCAPTION_CONTEXT_SIZE", "2048")

    settings = mod.load_settings(path)
    assert settings.models_path == tmp_path / "store"
    assert settings.max_tokens == 128
    assert settings.gpu_layers == 12
    assert settings.context_size == 2048


def test_malformed_settings_fall_back_to_defaults(tmp_path: Path, monkeypatch) -> None:
    from localcaption.utils import settings as mod

    for env_key in mod._ENV_OVERRIDES:
        monkeypatch.delenv(env_key, raising=False)
    path = tmp_path / "settings.yaml"

    path.write_text("- just\n- a list\n", encoding="utf-8")
    assert mod.load_settings(path).context_size == 4096

    path.write_text("context_size: lots\n", encoding="utf-8")
    assert mod.load_settings(path).context_size == 4096

    path.write_text("context_size: [unclosed\n", encoding="utf-8")
    assert mod.load_settings(path).max_tokens == 512


def test_save_settings_round_trips(tmp_path: Path, monkeypatch) -> None:
    from localcaption.utils import settings as mod

    for env_key in mod._ENV_OVERRIDES:
        monkeypatch.delenv(env_key, raising=False)
    original = mod.CaptioningSettings(models_dir=str(tmp_path / "m"), max_tokens=64)
    saved = mod.save_settings(original, tmp_path / "nested" / "settings.yaml")

    assert saved.exists()
    assert mod.load_settings(saved) == original
