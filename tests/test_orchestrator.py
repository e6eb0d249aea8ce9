import json
from unittest.mock import patch

import pytest

import crossbuild
from crossbuild import (
    FAILED,
    NOT_RUN,
    SKIPPED,
    SUCCEEDED,
    BuildGraph,
    ManifestEntry,
    Orchestrator,
    Project,
    ProjectConfig,
    Settings,
    UnsupportedTargetError,
    main,
    make_recipe,
)


def graph():
    return BuildGraph(
        [
            make_recipe(
                "gmp",
                steps=[("install", "touch {lib}/libgmp.a {bin}/libgmp-10.dll")],
                outputs=["{lib}/libgmp.a"],
            ),
            make_recipe(
                "mpfr",
                steps=[("install", "touch {lib}/libmpfr.a")],
                inputs=["{lib}/libgmp.a"],
                outputs=["{lib}/libmpfr.a"],
                requires=["gmp"],
            ),
            make_recipe(
                "core",
                group="core",
                steps=[("install", "touch {bin}/{project}.exe")],
                outputs=["{bin}/{project}.exe"],
                requires=["gmp"],
            ),
            make_recipe(
                "installer",
                group="installer",
                steps=[("install", "touch {root}/{project}-{machine}-setup.exe")],
                outputs=["{root}/{project}-{machine}-setup.exe"],
            ),
        ]
    )


MANIFEST = {
    "64-bit": [ManifestEntry("{project}.exe"), ManifestEntry("libgmp-*.dll")],
}


@pytest.fixture
def orchestrator(tmp_path):
    settings = Settings(prefix=str(tmp_path / "install"), sysroot=str(tmp_path / "sys"))
    return Orchestrator(
        settings,
        config=ProjectConfig(graph(), MANIFEST),
        project=Project(tmp_path),
    )


class TestOrchestrator:
    def test_profile(self, orchestrator, tmp_path):
        assert orchestrator.profile.arch == "64-bit"
        assert orchestrator.profile.prefix == tmp_path / "install"
        assert orchestrator.fetcher.src == tmp_path / "build" / "src" / "x86_64"

    def test_default_prefix(self, tmp_path):
        orch = Orchestrator(
            Settings(target="win32"),
            config=ProjectConfig(graph(), MANIFEST),
            project=Project(tmp_path),
        )
        assert orch.profile.prefix == tmp_path / "build" / "install" / "i686"

    def test_unsupported_target(self, tmp_path):
        with pytest.raises(UnsupportedTargetError):
            Orchestrator(
                Settings(target="sparc"),
                config=ProjectConfig(graph(), MANIFEST),
                project=Project(tmp_path),
            )

    def test_build_all_excludes_installer(self, orchestrator, tmp_path):
        report = orchestrator.build_all()
        assert list(report.results) == ["gmp", "mpfr", "core"]
        assert report.exit_code == 0
        assert not (tmp_path / "app-x86_64-setup.exe").exists()
        assert report.log_path.parent.parent == tmp_path / "build" / "logs"

    def test_build_one_with_requires(self, orchestrator):
        report = orchestrator.build_one("mpfr")
        assert list(report.results) == ["gmp", "mpfr"]
        report = orchestrator.build_one("mpfr")
        assert [r.status for r in report.results.values()] == [SKIPPED, SKIPPED]

    def test_build_one_without_requires(self, orchestrator):
        orchestrator.build_one("gmp")
        report = orchestrator.build_one("core", with_requires=False)
        assert list(report.results) == ["core"]
        assert report.status("core") == SUCCEEDED

    def test_clean(self, orchestrator):
        orchestrator.build_one("gmp")
        lib = orchestrator.profile.lib_dir / "libgmp.a"
        assert lib.exists()
        orchestrator.clean("gmp")
        assert not lib.exists()
        report = orchestrator.build_one("gmp")
        assert report.status("gmp") == SUCCEEDED

    def test_collect_and_package(self, orchestrator, tmp_path):
        orchestrator.build_all()
        report = orchestrator.package()
        dist = orchestrator.profile.dist_dir
        assert (dist / "bin" / "app.exe").is_file()
        assert (dist / "bin" / "libgmp-10.dll").is_file()
        assert report.status("installer") == SUCCEEDED
        assert (tmp_path / "app-x86_64-setup.exe").is_file()

    def test_full_release(self, orchestrator, tmp_path):
        orchestrator.build_all()
        stale = orchestrator.profile.lib_dir / "stale.a"
        stale.write_text("")
        report = orchestrator.full_release()
        assert not stale.exists()
        assert list(report.results) == ["gmp", "mpfr", "core", "installer"]
        assert all(r.status == SUCCEEDED for r in report.results.values())
        assert report.exit_code == 0

    def test_full_release_stops_on_failure(self, tmp_path):
        broken = BuildGraph(
            [
                make_recipe("gmp", steps=[("configure", "sh -c 'exit 7'")]),
                make_recipe("installer", group="installer", steps=[("install", "true")]),
            ]
        )
        orch = Orchestrator(
            Settings(prefix=str(tmp_path / "install")),
            config=ProjectConfig(broken, MANIFEST),
            project=Project(tmp_path),
        )
        with patch.object(orch, "collect") as mock_collect:
            report = orch.full_release()
        mock_collect.assert_not_called()
        assert report.status("gmp") == FAILED
        assert "installer" not in report.results
        assert report.exit_code == 7

    def test_dry_run(self, orchestrator, capsys):
        orchestrator.dry_run()
        out = capsys.readouterr().out
        assert "BUILD PLAN" in out
        assert "x86_64-w64-mingw32" in out
        assert "[run] gmp" in out
        assert not orchestrator.profile.prefix.exists()


class TestMain:
    @pytest.fixture(autouse=True)
    def workspace(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        for key in list(crossbuild.os.environ):
            if key.startswith("CROSSBUILD_"):
                monkeypatch.delenv(key)
        monkeypatch.setenv("CROSSBUILD_PREFIX", str(tmp_path / "install"))
        monkeypatch.setattr(crossbuild, "install_signal_handlers", lambda cancel: None)

    def config(self, tmp_path, command="touch {lib}/liba.a"):
        path = tmp_path / "crossbuild.json"
        path.write_text(
            json.dumps(
                {
                    "recipes": [
                        {
                            "id": "a",
                            "steps": [{"kind": "install", "command": command}],
                            "outputs": ["{lib}/liba.a"],
                        },
                        {
                            "id": "b",
                            "steps": [{"kind": "install", "command": "true"}],
                        },
                    ]
                }
            )
        )
        return str(path)

    def test_build_all(self, tmp_path, capsys):
        assert main(["-c", self.config(tmp_path), "build-all"]) == 0
        assert (tmp_path / "install" / "lib" / "liba.a").is_file()
        assert "succeeded" in capsys.readouterr().out

    def test_failure_exit_code_and_report(self, tmp_path):
        report = tmp_path / "report.json"
        code = main(
            ["-c", self.config(tmp_path, "sh -c 'exit 3'"), "-r", str(report), "build-all"]
        )
        assert code == 3
        data = json.loads(report.read_text())
        assert data["exit_code"] == 3
        assert data["first_failure"]["recipe"] == "a"
        assert data["first_failure"]["step"] == "install"
        assert [r["status"] for r in data["results"]] == [FAILED, NOT_RUN]

    def test_keep_going(self, tmp_path):
        report = tmp_path / "report.json"
        code = main(
            [
                "-c", self.config(tmp_path, "sh -c 'exit 3'"),
                "-k", "-r", str(report), "build-all",
            ]
        )
        assert code == 3
        statuses = [r["status"] for r in json.loads(report.read_text())["results"]]
        assert statuses == [FAILED, SUCCEEDED]

    def test_build_one(self, tmp_path):
        assert main(["-c", self.config(tmp_path), "build-one", "b", "--no-deps"]) == 0
        assert not (tmp_path / "install" / "lib" / "liba.a").exists()

    def test_unknown_recipe(self, tmp_path):
        assert main(["-c", self.config(tmp_path), "build-one", "zzz"]) == 125

    def test_unsupported_target(self, tmp_path):
        assert main(["-t", "sparc", "-c", self.config(tmp_path), "build-all"]) == 125

    def test_bad_config(self, tmp_path):
        bad = tmp_path / "bad.json"
        bad.write_text("{")
        assert main(["-c", str(bad), "build-all"]) == 125

    def test_pin_before_subcommand(self, tmp_path, capsys):
        assert main(["--pin", "gmp=6.2.1", "plan"]) == 0
        assert "gmp 6.2.1" in capsys.readouterr().out

    def test_plan(self, tmp_path, capsys):
        assert main(["-c", self.config(tmp_path), "plan"]) == 0
        assert "No changes were made" in capsys.readouterr().out
        assert not (tmp_path / "install").exists()

    def test_scan(self, tmp_path, capsys):
        log = tmp_path / "pipeline.log"
        log.write_text("=== recipe a [core] ===\nconfigure: error: no cc\n")
        assert main(["scan", str(log)]) == 1
        assert "[a] configure: error: no cc" in capsys.readouterr().out
        log.write_text("=== recipe a [core] ===\nall good\n")
        assert main(["scan", str(log)]) == 0

    def test_scan_missing_log(self, tmp_path):
        assert main(["scan", str(tmp_path / "missing.log")]) == 125

    def test_misspelled_requirement(self, tmp_path):
        path = tmp_path / "typo.json"
        path.write_text(
            json.dumps(
                {
                    "recipes": [
                        {"id": "gmp", "steps": [{"kind": "install", "command": "true"}]},
                        {
                            "id": "mpfr",
                            "requires": ["gmpp"],
                            "steps": [{"kind": "install", "command": "true"}],
                        },
                    ]
                }
            )
        )
        assert main(["-c", str(path), "build-all"]) == 125
