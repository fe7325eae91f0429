"""
Tests for the command-line interface.
"""

import json
import logging

import pytest
import yaml

from conftest import CANISTER_ID, ScriptedTransport, entry_doc


@pytest.fixture(autouse=True)
def _isolated(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    yield
    root = logging.getLogger("minter")
    for handler in list(root.handlers):
        if not isinstance(handler, logging.NullHandler):
            root.removeHandler(handler)


@pytest.fixture
def identity(tmp_path):
    from minter.identity import generate_identity_pem

    path = tmp_path / "identity.pem"
    signer = generate_identity_pem(path)
    return path, signer


@pytest.fixture
def manifest_file(tmp_path):
    path = tmp_path / "drop.yaml"
    path.write_text(yaml.safe_dump({
        "manifest_id": "drop-1",
        "canister_id": CANISTER_ID,
        "entries": [entry_doc("a", 1), entry_doc("b", 2)],
    }))
    return path


def _cli(transports=None, scripts=None):
    from minter.cli import MinterCLI

    def factory(network, timeout):
        transport = ScriptedTransport("drop-1", scripts or {"a": [], "b": []})
        if transports is not None:
            transports.append((network, timeout, transport))
        return transport

    return MinterCLI(transport_factory=factory)


def _json_out(capsys):
    return json.loads(capsys.readouterr().out)


class TestIdentityCommands:
    """keygen and principal."""

    def test_keygen_then_principal(self, tmp_path, capsys):
        from minter.cli import EXIT_OK

        out = tmp_path / "new.pem"
        assert _cli().run(["keygen", str(out)]) == EXIT_OK
        created = _json_out(capsys)
        assert out.exists()

        assert _cli().run(["principal", "--identity", str(out)]) == EXIT_OK
        assert _json_out(capsys)["principal"] == created["principal"]

    def test_keygen_refuses_overwrite(self, identity, capsys):
        from minter.cli import EXIT_ERROR

        path, _ = identity
        assert _cli().run(["keygen", str(path)]) == EXIT_ERROR
        assert "refusing to overwrite" in capsys.readouterr().err

    def test_missing_default_identity(self, capsys):
        from minter.cli import EXIT_ERROR

        assert _cli().run(["principal"]) == EXIT_ERROR
        assert "--identity" in capsys.readouterr().err


class TestMint:
    """The mint command end to end against a scripted canister."""

    def test_successful_run(self, tmp_path, manifest_file, identity, capsys):
        from minter.cli import EXIT_OK

        transports = []
        code = _cli(transports).run([
            "mint", str(manifest_file), "--identity", str(identity[0]),
            "--network", "local", "--timeout", "5", "-k", "2",
        ])
        result = _json_out(capsys)

        assert code == EXIT_OK
        assert result["succeeded"] == 2
        assert result["ledger"] == str((tmp_path / "drop.yaml.progress.json").resolve())
        assert transports[0][0] == "local"
        assert transports[0][1] == 5.0
        assert transports[0][2].timeouts == [5.0, 5.0]

    def test_rerun_skips_recorded_entries(self, manifest_file, identity, capsys):
        args = ["mint", str(manifest_file), "--identity", str(identity[0])]
        _cli().run(args)
        capsys.readouterr()

        transports = []
        _cli(transports).run(args)
        result = _json_out(capsys)

        assert result["skipped"] == 2
        assert transports[0][2].calls == []

    def test_failures_exit_incomplete(self, manifest_file, identity, capsys):
        from minter.cli import EXIT_INCOMPLETE
        from minter.transport import RemoteRejected

        code = _cli(scripts={"a": [RemoteRejected("bad")], "b": []}).run(
            ["mint", str(manifest_file), "--identity", str(identity[0])]
        )
        result = _json_out(capsys)

        assert code == EXIT_INCOMPLETE
        assert result["failed"] == 1
        assert result["entries"][0]["failure_kind"] == "remote_rejected"

    def test_no_resume_with_existing_ledger(self, manifest_file, identity, capsys):
        from minter.cli import EXIT_ERROR

        args = ["mint", str(manifest_file), "--identity", str(identity[0])]
        _cli().run(args)
        capsys.readouterr()

        assert _cli().run(args + ["--no-resume"]) == EXIT_ERROR
        assert "already holds 2 records" in capsys.readouterr().err

    def test_dry_run_sends_nothing(self, manifest_file, identity, capsys):
        from minter.cli import EXIT_OK

        transports = []
        code = _cli(transports).run(
            ["mint", str(manifest_file), "--identity", str(identity[0]), "--dry-run"]
        )
        result = _json_out(capsys)

        assert code == EXIT_OK
        assert result["dry_run"] is True
        assert result["principal"] == identity[1].principal.to_text()
        assert [e["ready"] for e in result["entries"]] == [True, True]
        assert transports == []
        assert not (manifest_file.parent / "drop.yaml.progress.json").exists()

    def test_invalid_manifest(self, tmp_path, identity, capsys):
        from minter.cli import EXIT_ERROR

        bad = tmp_path / "bad.yaml"
        bad.write_text(yaml.safe_dump({"entries": [{"id": "x"}]}))
        assert _cli().run(["mint", str(bad), "--identity", str(identity[0])]) == EXIT_ERROR

    def test_missing_canister(self, tmp_path, identity, capsys):
        from minter.cli import EXIT_USAGE

        path = tmp_path / "list.yaml"
        path.write_text(yaml.safe_dump([entry_doc("a")]))
        assert _cli().run(["mint", str(path), "--identity", str(identity[0])]) == EXIT_USAGE
        assert "no canister" in capsys.readouterr().err

    def test_bad_concurrency(self, manifest_file, identity):
        from minter.cli import EXIT_USAGE

        args = ["mint", str(manifest_file), "--identity", str(identity[0]), "-k", "0"]
        assert _cli().run(args) == EXIT_USAGE

    def test_out_of_range_env_backoff(self, manifest_file, identity, monkeypatch, capsys):
        from minter.cli import EXIT_USAGE

        monkeypatch.setenv("MINTER_JITTER_FACTOR", "2")
        transports = []
        args = ["mint", str(manifest_file), "--identity", str(identity[0])]
        assert _cli(transports).run(args) == EXIT_USAGE
        assert "jitter_factor" in capsys.readouterr().err
        assert transports == []

    def test_table_output(self, manifest_file, identity, capsys):
        _cli().run(["--format", "table", "mint", str(manifest_file), "--identity", str(identity[0])])
        out = capsys.readouterr().out

        assert out.splitlines()[0].startswith("entry_id")
        assert "succeeded" in out


class TestStatus:
    """Ledger inspection."""

    def test_status_from_manifest_path(self, manifest_file, identity, capsys):
        from minter.cli import EXIT_OK

        _cli().run(["mint", str(manifest_file), "--identity", str(identity[0])])
        capsys.readouterr()

        assert _cli().run(["status", str(manifest_file)]) == EXIT_OK
        result = _json_out(capsys)
        assert result["manifest_id"] == "drop-1"
        assert result["succeeded"] == 2

    def test_status_without_ledger(self, manifest_file, capsys):
        from minter.cli import EXIT_ERROR

        assert _cli().run(["status", str(manifest_file)]) == EXIT_ERROR


class TestConfigCommands:
    """config get/show/validate/schema."""

    def test_show_with_file(self, tmp_path, capsys):
        path = tmp_path / "custom.yaml"
        path.write_text(yaml.safe_dump({"orchestrator": {"concurrency": 6}}))

        assert _cli().run(["--config", str(path), "config", "show"]) == 0
        assert _json_out(capsys)["orchestrator"]["concurrency"] == 6

    def test_get(self, capsys):
        assert _cli().run(["config", "get", "retry.max_attempts"]) == 0
        assert _json_out(capsys)["value"] == 5

    def test_validate_reports_env_errors(self, monkeypatch, capsys):
        from minter.cli import EXIT_ERROR

        monkeypatch.setenv("MINTER_CONCURRENCY", "0")
        assert _cli().run(["config", "validate"]) == EXIT_ERROR
        assert _json_out(capsys)["valid"] is False

    def test_schema_yaml(self, capsys):
        assert _cli().run(["--format", "yaml", "config", "schema"]) == 0
        schema = yaml.safe_load(capsys.readouterr().out)
        assert "retry" in schema["properties"]

    def test_no_command(self, capsys):
        from minter.cli import EXIT_USAGE

        assert _cli().run([]) == EXIT_USAGE

    def test_bad_argument(self, capsys):
        from minter.cli import EXIT_USAGE

        assert _cli().run(["mint"]) == EXIT_USAGE


class TestPackage:

    def test_lazy_exports(self):
        import minter
        from minter.orchestrator import BatchOrchestrator

        assert minter.BatchOrchestrator is BatchOrchestrator
        with pytest.raises(AttributeError):
            minter.NoSuchThing

    def test_version_flag(self, capsys):
        from minter import __version__

        assert _cli().run(["--version"]) == 0
        assert __version__ in capsys.readouterr().out
