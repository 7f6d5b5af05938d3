"""Maintenance 单元测试"""

from __future__ import annotations

from pathlib import Path

from mammoth.services.maintenance import Maintenance


def _cache_template(cache, template, tmp_path: Path) -> None:
    src = tmp_path / f"src-{template.id}"
    src.mkdir()
    (src / "f").write_text("x", encoding="utf-8")
    cache.put(template.key, src)


class TestClean:
    def test_clean_cache_only(self, populated, store, cache, tmp_path: Path) -> None:
        _cache_template(cache, populated.get_template("vue-admin"), tmp_path)
        Maintenance(store, cache).clean()
        assert cache.list_all() == []
        assert cache.root.exists()
        assert len(store.snapshot().templates) == 2

    def test_clean_all_resets_registry(self, populated, store, cache) -> None:
        Maintenance(store, cache).clean(all=True)
        doc = store.snapshot()
        assert doc.repos == []
        assert doc.templates == []


class TestInfo:
    def test_info_summary(self, populated, store, cache, tmp_path: Path) -> None:
        populated.add_repository("priv", "https://x/p.git", auth_token="do-not-show-1")
        _cache_template(cache, populated.get_template("vue-admin"), tmp_path)
        info = Maintenance(store, cache).info()

        assert info["counts"] == {"repos": 2, "templates": 2, "cached": 1}
        cached = {t["id"]: t["cached"] for t in info["templates"]}
        assert cached == {"vue-admin": True, "react-app": False}
        priv = next(r for r in info["repos"] if r["name"] == "priv")
        assert priv["has_token"] is True
        assert "do-not-show-1" not in repr(info)

    def test_info_dangling(self, populated, store, cache) -> None:
        populated.remove_repository("main")
        info = Maintenance(store, cache).info()
        assert {d["template"] for d in info["dangling"]} == {"vue-admin", "react-app"}
