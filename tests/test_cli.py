"""Tests for the docserver command line entry point."""

import pytest

import docserver
from docserver import DEFAULT_HOST, DEFAULT_PORT, ConfigurationError, main, parse_port


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch):
    """Keep main() from replacing pytest's log handlers."""
    monkeypatch.setattr(docserver, "configure_logging", lambda log_level: None)


@pytest.fixture
def run_calls(monkeypatch):
    calls = []

    def fake_run(self, host=None, port=None, **options):
        calls.append({"host": host, "port": port, **options})

    monkeypatch.setattr(docserver.Flask, "run", fake_run)
    return calls


@pytest.mark.cli
class TestParsePort:
    """Tests for port validation."""

    @pytest.mark.parametrize("value,expected", [("1", 1), ("8080", 8080), ("65535", 65535), (4040, 4040)])
    def test_valid(self, value, expected):
        """Test the accepted range."""
        assert parse_port(value) == expected

    @pytest.mark.parametrize(
        "value",
        ["0", "65536", "99999", "-1", "abc", "", "80.5", "4_040", " 80 ", "+80", "\u0668\u0660"],
    )
    def test_invalid(self, value):
        """Test that anything outside 1-65535 is rejected."""
        with pytest.raises(ConfigurationError, match="Port must be a number between 1 and 65535"):
            parse_port(value)


@pytest.mark.cli
class TestMain:
    """Tests for startup behaviour."""

    def test_starts_server(self, docs_root, run_calls, capsys):
        """Test a valid startup binds the configured host and port."""
        code = main([str(docs_root), "8123", "--host", "0.0.0.0"])

        assert code == 0
        assert run_calls == [{"host": "0.0.0.0", "port": 8123, "threaded": True}]
        out = capsys.readouterr().out
        assert "Starting docs server on http://0.0.0.0:8123" in out
        assert f"Serving directory: {docs_root}" in out

    def test_defaults(self, docs_root, run_calls, monkeypatch):
        """Test that the directory defaults to the working directory."""
        monkeypatch.chdir(docs_root)
        monkeypatch.setattr(docserver, "PORT_SETTING", str(DEFAULT_PORT))

        assert main([]) == 0
        assert run_calls[0]["host"] == DEFAULT_HOST
        assert run_calls[0]["port"] == DEFAULT_PORT

    def test_port_from_environment(self, docs_root, run_calls, monkeypatch):
        """Test that the environment port is used when no port argument is given."""
        monkeypatch.setattr(docserver, "PORT_SETTING", "9100")

        assert main([str(docs_root)]) == 0
        assert run_calls[0]["port"] == 9100

    def test_bad_port_from_environment(self, docs_root, run_calls, monkeypatch, capsys):
        """Test that a bad environment port fails like a bad argument."""
        monkeypatch.setattr(docserver, "PORT_SETTING", "not-a-port")

        assert main([str(docs_root)]) == 1
        assert run_calls == []
        assert "Error: Port must be a number between 1 and 65535" in capsys.readouterr().err

    def test_argument_overrides_environment_port(self, docs_root, run_calls, monkeypatch):
        """Test that the positional port wins over the environment."""
        monkeypatch.setattr(docserver, "PORT_SETTING", "not-a-port")

        assert main([str(docs_root), "8200"]) == 0
        assert run_calls[0]["port"] == 8200

    def test_missing_directory(self, tmp_path, run_calls, capsys):
        """Test that a missing directory fails before binding."""
        code = main([str(tmp_path / "nope")])

        assert code == 1
        assert run_calls == []
        assert "does not exist." in capsys.readouterr().err

    def test_file_is_not_a_directory(self, tmp_path, run_calls, capsys):
        """Test that a file cannot be served as the root."""
        target = tmp_path / "file.txt"
        target.write_text("x", encoding="utf-8")

        assert main([str(target)]) == 1
        assert run_calls == []
        assert "is not a directory." in capsys.readouterr().err

    @pytest.mark.parametrize("port", ["99999", "0", "http"])
    def test_bad_port(self, docs_root, run_calls, capsys, port):
        """Test that an invalid port fails before binding."""
        assert main([str(docs_root), port]) == 1
        assert run_calls == []
        assert "Error: Port must be a number between 1 and 65535" in capsys.readouterr().err

    def test_bind_failure(self, docs_root, monkeypatch, capsys):
        """Test that a port already in use exits with an error."""

        def fail_run(self, host=None, port=None, **options):
            raise OSError("Address already in use")

        monkeypatch.setattr(docserver.Flask, "run", fail_run)

        assert main([str(docs_root), "8123"]) == 1
        assert "Address already in use" in capsys.readouterr().err

    def test_unknown_option(self, capsys):
        """Test that argparse errors become a non-zero exit code."""
        assert main(["--no-such-flag"]) == 2
