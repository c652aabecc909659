"""Tests for the export_library.py and import_library.py command-line scripts."""

import pytest

import export_library
import import_library
from gvstorage.conflicts import ConflictAction, ConflictResolution
from gvstorage.database import Asset
from import_library import prompt_resolver

EXISTING = {"slug": "foo", "version": "1.0", "fileSizeBytes": 2048}
INCOMING = {"slug": "foo", "version": "2.0", "fileSizeBytes": 4096}


def _scripted(*answers):
    pending = list(answers)

    def ask(prompt):
        answer = pending.pop(0)
        if isinstance(answer, BaseException):
            raise answer
        return answer

    return ask


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch):
    # The scripts reconfigure the root logger; keep pytest's handlers in place.
    monkeypatch.setattr(export_library, "setup_logging", lambda *a, **kw: None)
    monkeypatch.setattr(import_library, "setup_logging", lambda *a, **kw: None)


# =============================================================================
# Interactive conflict prompt
# =============================================================================


class TestPromptResolver:
    def _resolve(self, *answers, taken=("foo",)):
        output = []
        resolver = prompt_resolver(set(taken).__contains__, ask=_scripted(*answers), write=output.append)
        return resolver("foo", "Foo Kit", EXISTING, INCOMING), output

    def test_empty_answer_skips(self):
        resolution, output = self._resolve("")
        assert resolution == ConflictResolution.skip()
        assert any("version 2.0, 4.0 KB" in line for line in output)

    def test_overwrite(self):
        resolution, _ = self._resolve("o")
        assert resolution.action == ConflictAction.OVERWRITE

    def test_rename_takes_suggestion(self):
        resolution, _ = self._resolve("r", taken=("foo", "foo-2"))
        assert resolution == ConflictResolution.rename("foo-3")

    def test_custom_slug_after_bad_answers(self):
        resolution, output = self._resolve("Bad Slug!", "foo", "foo-kit-v2")
        assert resolution == ConflictResolution.rename("foo-kit-v2")
        assert sum("Please answer" in line for line in output) == 2

    def test_end_of_input_skips(self):
        resolution, _ = self._resolve(EOFError())
        assert resolution.action == ConflictAction.SKIP


# =============================================================================
# Scripts
# =============================================================================


def test_export_then_reimport_with_skip(app_library, tmp_path, capsys):
    bundle = tmp_path / "cli_backup.zip"
    assert export_library.main(["-o", str(bundle)]) == 0
    assert bundle.is_file()
    assert "Export completed successfully" in capsys.readouterr().out

    before = app_library.count(Asset)
    assert import_library.main([str(bundle), "--on-conflict", "skip"]) == 0
    out = capsys.readouterr().out
    assert "0 imported" in out
    assert app_library.count(Asset) == before


def test_import_of_invalid_bundle_fails(app_library, tmp_path, capsys):
    junk = tmp_path / "junk.zip"
    junk.write_bytes(b"nope")
    assert import_library.main([str(junk), "--on-conflict", "skip"]) == 1
    assert "Error" in capsys.readouterr().out


def test_unknown_conflict_policy_is_rejected(tmp_path):
    with pytest.raises(SystemExit) as excinfo:
        import_library.main([str(tmp_path / "x.zip"), "--on-conflict", "merge"])
    assert excinfo.value.code == 2


def test_server_entry_point_passes_options(monkeypatch):
    import main

    calls = []
    monkeypatch.setattr(main, "setup_logging", lambda *a, **kw: None)
    monkeypatch.setattr(main.uvicorn, "run", lambda target, **kw: calls.append((target, kw)))

    main.main(["--host", "0.0.0.0", "--port", "9001"])
    main.main(["--reload"])

    assert calls[0] == (main.app, {"host": "0.0.0.0", "port": 9001})
    assert calls[1][0] == "gvstorage:app"
    assert calls[1][1]["reload"] is True
