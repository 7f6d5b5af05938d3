"""ServiceContainer 单元测试"""

from __future__ import annotations

from pathlib import Path

import pytest

import mammoth.core.config as cfgmod
from mammoth.core.exceptions import NotFoundError
from mammoth.services.container import ServiceContainer, get_container, reset_container


@pytest.fixture()
def config(tmp_path: Path) -> cfgmod.Config:
    return cfgmod.Config(config_dir=str(tmp_path / "cfg"), cache_dir=str(tmp_path / "cache"))


@pytest.fixture(autouse=True)
def _reset(config, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(cfgmod, "_current", config)
    reset_container()
    yield
    reset_container()


class TestServiceContainer:
    def test_lazy_loading(self) -> None:
        c = ServiceContainer()
        assert len(c._instances) == 0
        _ = c.registry
        assert "registry" in c._instances
        assert "store" in c._instances

    def test_shared_instances(self) -> None:
        c = ServiceContainer()
        assert c.registry is c.registry
        assert c.retrieval.cache is c.cache
        assert c.registry.store is c.transfer.store

    def test_config_wired(self, config) -> None:
        c = ServiceContainer()
        assert str(c.store.registry_file) == config.registry_file
        assert str(c.cache.root) == config.cache_dir
        assert c.retrieval.timeout == config.checkout_timeout

    def test_injected_checkout(self, checkout_factory) -> None:
        fake = checkout_factory()
        c = ServiceContainer(checkout=fake)
        assert c.retrieval.checkout is fake

    def test_global_singleton(self) -> None:
        assert get_container() is get_container()


class TestScaffoldingContract:
    def test_resolve_template_downloads_once(self, config, checkout_factory) -> None:
        fake = checkout_factory()
        c = ServiceContainer(config=config, checkout=fake)
        c.registry.add_repository("main", "https://example.com/t.git")
        c.registry.add_template("vue", "Vue", "main", "templates/vue")

        p1 = c.resolve_template("vue")
        p2 = c.resolve_template("vue")
        assert p1 == p2
        assert (p1 / "README.md").exists()
        assert len(fake.calls) == 1

        c.resolve_template("vue", force=True)
        assert len(fake.calls) == 2

    def test_resolve_unknown_template(self, config, checkout_factory) -> None:
        c = ServiceContainer(config=config, checkout=checkout_factory())
        with pytest.raises(NotFoundError):
            c.resolve_template("ghost")

    def test_generate_via_container(self, config, checkout_factory, tmp_path: Path) -> None:
        c = ServiceContainer(config=config, checkout=checkout_factory())
        c.registry.add_repository("main", "https://example.com/t.git")
        c.registry.add_template("vue", "Vue", "main", "templates/vue")
        project = c.project.generate("vue", "app", output_dir=tmp_path / "out", init_git=False)
        assert (project / "README.md").exists()

    def test_export_import(self, config, tmp_path: Path) -> None:
        c = ServiceContainer(config=config)
        c.registry.add_repository("main", "https://example.com/t.git")
        report = c.export_config(tmp_path / "out.json")
        assert report.repo_count == 1
        c.maintenance.clean(all=True)
        c.import_config(tmp_path / "out.json")
        assert [r.name for r in c.registry.list_repositories()] == ["main"]
