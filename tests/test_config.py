"""Tests for configuration loading and validation."""

from __future__ import annotations

import os
from pathlib import Path

import pytest
from memchain.capture import CaptureStrategy
from memchain.config import AnchorConfig, MemchainSettings, WorkerConfig, load_config
from memchain.models.anchors import AnchorPolicy
from pydantic import ValidationError


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in list(os.environ):
        if key.startswith("MEMCHAIN_"):
            monkeypatch.delenv(key)


class TestDefaults:
    def test_anchoring_off_by_default(self) -> None:
        settings = MemchainSettings()
        assert settings.anchor.enabled is False
        assert settings.anchor.policy is AnchorPolicy.DAILY
        assert settings.crypto.key_context == "MEMCHAIN_ENCRYPTION_KEY_V1"
        assert settings.capture.strategy is CaptureStrategy.LAST_TURN

    def test_storage_paths_live_under_data_dir(self, tmp_path: Path) -> None:
        settings = MemchainSettings.model_validate({"storage": {"data_dir": str(tmp_path)}})
        assert settings.storage.queue_path == tmp_path / "queue.jsonl"
        assert settings.storage.state_path == tmp_path / "state.json"
        assert settings.storage.state_db_path == tmp_path / "state.db"


class TestAnchorConfig:
    def test_enabled_requires_endpoint(self) -> None:
        with pytest.raises(ValidationError, match="at least one endpoint"):
            AnchorConfig(enabled=True)

    def test_enabled_with_endpoint(self) -> None:
        cfg = AnchorConfig(enabled=True, endpoints=["http://ledger.test"], policy="every_record")
        assert cfg.policy is AnchorPolicy.EVERY_RECORD


class TestWorkerConfig:
    def test_interval_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            WorkerConfig(interval_s=0)


class TestLoadConfig:
    def test_reads_yaml_under_memchain_key(self, tmp_path: Path) -> None:
        path = tmp_path / "memchain.yaml"
        path.write_text(
            "memchain:\n"
            "  identity:\n"
            "    owner: alice\n"
            "    agent_id: bot\n"
            "  anchor:\n"
            "    enabled: true\n"
            "    endpoints: [http://ledger.test]\n"
            "  recall:\n"
            "    limit: 25\n",
            encoding="utf-8",
        )
        settings = load_config(path)
        assert settings.identity.owner == "alice"
        assert settings.anchor.enabled is True
        assert settings.recall.limit == 25

    def test_accepts_flat_document(self, tmp_path: Path) -> None:
        path = tmp_path / "flat.yaml"
        path.write_text("capture:\n  strategy: full_session\n", encoding="utf-8")
        assert load_config(path).capture.strategy is CaptureStrategy.FULL_SESSION

    def test_env_overrides_yaml(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        path = tmp_path / "memchain.yaml"
        path.write_text("recall:\n  limit: 25\n", encoding="utf-8")
        monkeypatch.setenv("MEMCHAIN_RECALL__LIMIT", "3")
        monkeypatch.setenv("MEMCHAIN_IDENTITY__OWNER", "carol")
        settings = load_config(path)
        assert settings.recall.limit == 3
        assert settings.identity.owner == "carol"

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "absent.yaml")

    def test_non_mapping_document(self, tmp_path: Path) -> None:
        path = tmp_path / "list.yaml"
        path.write_text("- one\n- two\n", encoding="utf-8")
        with pytest.raises(ValueError, match="top-level mapping"):
            load_config(path)

    def test_signing_key_is_secret(self, tmp_path: Path) -> None:
        path = tmp_path / "memchain.yaml"
        path.write_text("identity:\n  signing_key_hex: 'abcd'\n", encoding="utf-8")
        settings = load_config(path)
        assert settings.identity.signing_key_hex is not None
        assert "abcd" not in repr(settings.identity)
        assert settings.identity.signing_key_hex.get_secret_value() == "abcd"

    def test_env_lists_parse_and_hex_seed_stays_string(self, tmp_path: Path) -> None:
        path = tmp_path / "memchain.yaml"
        path.write_text("anchor:\n  policy: every_record\n", encoding="utf-8")
        seed = "1" * 64
        settings = load_config(
            path,
            environ={
                "MEMCHAIN_ANCHOR__ENABLED": "true",
                "MEMCHAIN_ANCHOR__ENDPOINTS": '["http://a.test", "http://b.test"]',
                "MEMCHAIN_IDENTITY__SIGNING_KEY_HEX": seed,
            },
        )
        assert settings.anchor.enabled is True
        assert settings.anchor.endpoints == ["http://a.test", "http://b.test"]
        assert settings.anchor.policy is AnchorPolicy.EVERY_RECORD
        assert settings.identity.signing_key_hex is not None
        assert settings.identity.signing_key_hex.get_secret_value() == seed
