import pytest
from pydantic import ValidationError as SchemaError

from services.config import load_config


def test_load_config_from_yaml(tmp_path, monkeypatch):
    monkeypatch.delenv("DATABASE_PATH", raising=False)
    monkeypatch.delenv("OLLAMA_MODEL", raising=False)
    path = tmp_path / "config.yml"
    path.write_text(
        "DATABASE_PATH: /tmp/custom.db\n"
        "OLLAMA_MODEL: custom-model\n"
        "synthesis:\n"
        "  min_similarity: 0.7\n"
        "queue:\n"
        "  per_source_cap_fraction: 0.5\n"
        "  premium_tiers:\n"
        "    vip@premium.com: 1\n"
    )

    config = load_config(str(path))

    assert config.DATABASE_PATH == "/tmp/custom.db"
    assert config.OLLAMA_MODEL == "custom-model"
    assert config.synthesis.min_similarity == 0.7
    assert config.synthesis.max_age_days == 90
    assert config.queue.per_source_cap_fraction == 0.5
    assert config.queue.premium_tiers == {"vip@premium.com": 1}
    assert config.embedding.dimension == 768


def test_environment_overrides_yaml(tmp_path, monkeypatch):
    path = tmp_path / "config.yml"
    path.write_text("OLLAMA_MODEL: from-yaml\n")
    monkeypatch.setenv("OLLAMA_MODEL", "from-env")

    assert load_config(str(path)).OLLAMA_MODEL == "from-env"


def test_missing_explicit_path_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(str(tmp_path / "absent.yml"))


def test_invalid_cap_fraction_rejected(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text("queue:\n  per_source_cap_fraction: 1.5\n")
    with pytest.raises(SchemaError):
        load_config(str(path))
