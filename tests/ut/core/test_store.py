"""ConfigStore 单元测试"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from mammoth.core.exceptions import ConfigError
from mammoth.core.models import Repository
from mammoth.core.store import ConfigStore


class TestLoad:
    def test_missing_file_is_empty(self, tmp_path: Path) -> None:
        store = ConfigStore(tmp_path / "templates.json")
        doc = store.snapshot()
        assert doc.repos == []
        assert doc.templates == []
        assert store.exists is False

    def test_corrupt_file(self, tmp_path: Path) -> None:
        f = tmp_path / "templates.json"
        f.write_text("{not json", encoding="utf-8")
        with pytest.raises(ConfigError, match="损坏"):
            ConfigStore(f)

    def test_wrong_shape(self, tmp_path: Path) -> None:
        f = tmp_path / "templates.json"
        f.write_text(json.dumps({"repos": "oops"}), encoding="utf-8")
        with pytest.raises(ConfigError, match="repos"):
            ConfigStore(f)

    def test_newer_version_rejected(self, tmp_path: Path) -> None:
        f = tmp_path / "templates.json"
        f.write_text(json.dumps({"version": 99, "repos": [], "templates": []}), encoding="utf-8")
        with pytest.raises(ConfigError, match="版本"):
            ConfigStore(f)

    def test_legacy_document_migrated(self, tmp_path: Path) -> None:
        f = tmp_path / "templates.json"
        f.write_text(json.dumps({
            "repos": [{"name": "r", "url": "https://x/r.git", "branch": "main"}],
            "templates": [{
                "id": "t", "name": "T", "repo": "r", "path": "p",
                "description": "", "language": "vue", "tags": ["a"],
            }],
        }), encoding="utf-8")
        store = ConfigStore(f)
        assert store.snapshot().version == 1
        with store.transaction():
            pass
        assert json.loads(f.read_text(encoding="utf-8"))["version"] == 1


class TestTransaction:
    def test_commit(self, tmp_path: Path) -> None:
        store = ConfigStore(tmp_path / "cfg" / "templates.json")
        with store.transaction() as doc:
            doc.repos.append(Repository(name="a", url="https://x/a.git"))
        assert store.snapshot().find_repo("a") is not None
        reloaded = ConfigStore(store.registry_file)
        assert reloaded.snapshot().find_repo("a") is not None

    def test_rollback_on_error(self, tmp_path: Path) -> None:
        store = ConfigStore(tmp_path / "templates.json")
        with store.transaction() as doc:
            doc.repos.append(Repository(name="a", url="https://x/a.git"))
        before = store.registry_file.read_text(encoding="utf-8")

        with pytest.raises(RuntimeError):
            with store.transaction() as doc:
                doc.repos.clear()
                raise RuntimeError("boom")
        assert store.registry_file.read_text(encoding="utf-8") == before
        assert store.snapshot().find_repo("a") is not None

    def test_sees_other_writer(self, tmp_path: Path) -> None:
        f = tmp_path / "templates.json"
        s1 = ConfigStore(f)
        s2 = ConfigStore(f)
        with s1.transaction() as doc:
            doc.repos.append(Repository(name="a", url="https://x/a.git"))
        with s2.transaction() as doc:
            doc.repos.append(Repository(name="b", url="https://x/b.git"))
        names = [r.name for r in ConfigStore(f).snapshot().repos]
        assert names == ["a", "b"]

    def test_snapshot_is_isolated(self, tmp_path: Path) -> None:
        store = ConfigStore(tmp_path / "templates.json")
        snap = store.snapshot()
        snap.repos.append(Repository(name="x", url="u"))
        assert store.snapshot().repos == []

    def test_tokens_persisted(self, tmp_path: Path) -> None:
        store = ConfigStore(tmp_path / "templates.json")
        with store.transaction() as doc:
            doc.repos.append(Repository(name="a", url="https://x/a.git", auth_token="tok-1234"))
        data = json.loads(store.registry_file.read_text(encoding="utf-8"))
        assert data["repos"][0]["auth_token"] == "tok-1234"

    def test_reset(self, tmp_path: Path) -> None:
        store = ConfigStore(tmp_path / "templates.json")
        with store.transaction() as doc:
            doc.repos.append(Repository(name="a", url="https://x/a.git"))
        store.reset()
        assert store.snapshot().repos == []
        assert ConfigStore(store.registry_file).snapshot().repos == []
