from __future__ import annotations

import pytest
from watchdog.events import FileModifiedEvent

from iiifsite import assets
from iiifsite.assets import build_assets, watch_assets
from iiifsite.config import ui_paths
from iiifsite.errors import BundleError

from conftest import FakeBundler, FakeObserver, make_ui_project, write_fake_esbuild


@pytest.fixture
def project(tmp_path):
    config = make_ui_project(tmp_path)
    return tmp_path, config


def test_build_assets_bundles_and_compiles_styles(project):
    root, config = project
    results = build_assets(config, FakeBundler())

    assert set(results) == {"client", "server"}
    assert (root / "ui" / "dist" / "index.mjs").exists()
    assert (root / "ui" / "dist" / "server.mjs").exists()
    css = (root / "ui" / "styles" / "index.css").read_text()
    assert "#2563eb" in css


def test_build_assets_without_stylesheet(tmp_path):
    config = make_ui_project(tmp_path, with_styles=False)
    build_assets(config, FakeBundler())
    assert not (tmp_path / "ui" / "styles").exists()


def test_bundle_failure_is_raised(project):
    _, config = project
    with pytest.raises(BundleError) as info:
        build_assets(config, FakeBundler(failing={"client"}))
    assert info.value.failed == ["client"]


def test_watch_recompiles_styles_when_a_partial_changes(project):
    root, config = project
    bundler = FakeBundler()
    results = build_assets(config, bundler)
    observer = FakeObserver()
    session = watch_assets(config, bundler, results, observer=observer)
    try:
        partial = ui_paths(config)['styles_dir'] / "_colors.scss"
        partial.write_text("$accent: #dc2626;\n")
        observer.emit(FileModifiedEvent(str(partial)))

        css = (root / "ui" / "styles" / "index.css").read_text()
        assert "#dc2626" in css
        assert "#2563eb" not in css

        # The generated stylesheet itself does not trigger a compile
        assert observer.emit(FileModifiedEvent(str(ui_paths(config)['styles_output']))) == 1
        assert len(session.contexts) == 2
    finally:
        session.stop()
    assert observer.stopped


def test_watch_without_stylesheet_has_no_style_watch(tmp_path):
    config = make_ui_project(tmp_path, with_styles=False)
    bundler = FakeBundler()
    session = watch_assets(config, bundler, build_assets(config, bundler))
    try:
        assert session.style_watch is None
    finally:
        session.stop()


# --- Command line ---

def test_main_builds_with_local_esbuild(project, monkeypatch):
    root, _ = project
    write_fake_esbuild(root)
    monkeypatch.chdir(root)

    assert assets.main([]) == 0
    assert (root / "ui" / "dist" / "index.mjs").exists()
    assert '"@iiifsite/app/lib/components/Card.js"' in (root / "ui" / "dist" / "server.mjs").read_text()
    assert (root / "ui" / "styles" / "index.css").exists()


def test_main_reports_bundle_failure(project, monkeypatch, capsys):
    root, _ = project
    write_fake_esbuild(root)
    (root / "ui" / "index.js").write_text("SYNTAX ERROR\n")
    monkeypatch.chdir(root)

    assert assets.main([]) == 1
    assert "Bundle build failed for: client" in capsys.readouterr().err
    assert (root / "ui" / "dist" / "server.mjs").exists()


def test_main_without_esbuild(project, monkeypatch, capsys):
    root, _ = project
    monkeypatch.chdir(root)
    monkeypatch.setenv("PATH", str(root / "no-bin"))

    assert assets.main([]) == 1
    assert "npm install --save-dev esbuild" in capsys.readouterr().err
