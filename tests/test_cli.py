import json

import pytest

from pscreen import __version__
from pscreen.main import _fmt_eta, build_parser, main

from conftest import make_session


@pytest.fixture(autouse=True)
def _isolated(isolated_env):
    return isolated_env


def test_fmt_eta():
    assert _fmt_eta(None) == "estimating…"
    assert _fmt_eta(65) == "1m 05s"
    assert _fmt_eta(3725) == "1h 02m 05s"


def test_parser_rejects_unknown_browser():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["take", "example.com", "-b", "opera"])


def test_take_rejects_invalid_url_before_launching(fake_playwright, capsys):
    assert main(["take", "ftp://example.com"]) == 1
    assert "Invalid URL" in capsys.readouterr().err
    assert fake_playwright.launches == []


def test_take_requires_a_url(capsys):
    assert main(["take"]) == 1
    assert "No URLs specified" in capsys.readouterr().err


def test_take_json(fake_playwright, results_dir, capsys):
    code = main(["take", "example.com", "-o", str(results_dir), "-w", "200", "-H", "100", "--json"])
    assert code == 0
    data = json.loads(capsys.readouterr().out)
    assert data["success"] is True
    result = data["results"][0]
    assert result["domain"] == "example.com"
    assert len(result["files"]) == 4
    assert result["view_path"] == f"/view/example.com/{result['session_id']}"
    assert (results_dir / "example.com" / result["session_id"] / "full_page.png").is_file()


def test_take_batch_file(fake_playwright, results_dir, tmp_path, capsys):
    urls = tmp_path / "urls.txt"
    urls.write_text("# two sites\na.example\nb.example\n")
    assert main(["take", "--batch", str(urls), "-o", str(results_dir)]) == 0
    out = capsys.readouterr().out
    assert "2 successful, 0 failed" in out
    assert sorted(p.name for p in results_dir.iterdir()) == ["a.example", "b.example"]


def test_take_failure_exits_nonzero(fake_playwright, results_dir, capsys):
    fake_playwright.goto_error = "net::ERR_CONNECTION_REFUSED"
    assert main(["take", "example.com", "-o", str(results_dir), "--retries", "1"]) == 1
    assert "ERR_CONNECTION_REFUSED" in capsys.readouterr().err
    assert not (results_dir / "example.com").exists()


@pytest.mark.parametrize("flag, value, field", [
    ("-w", "0", "width"),
    ("-H", "5000", "height"),
    ("-t", "500", "timeout_ms"),
])
def test_take_rejects_out_of_range_options(fake_playwright, results_dir, capsys, flag, value, field):
    assert main(["take", "example.com", "-o", str(results_dir), flag, value]) == 1
    err = capsys.readouterr().err
    assert err.startswith("Error: Invalid capture options")
    assert field in err
    assert fake_playwright.launches == []


@pytest.mark.parametrize("flag", ["--retries", "--parallel"])
def test_take_rejects_zero_retries_and_parallel(fake_playwright, results_dir, capsys, flag):
    assert main(["take", "example.com", "-o", str(results_dir), flag, "0"]) == 1
    assert f"{flag} must be at least 1, got 0" in capsys.readouterr().err
    assert fake_playwright.launches == []


def test_aborted_batch_still_reports_finished_captures(fake_playwright, results_dir, capsys):
    fake_playwright.fail_hosts = {"bad.example"}
    code = main(["take", "a.example", "bad.example", "-o", str(results_dir), "--retries", "1"])
    assert code == 1
    captured = capsys.readouterr()
    assert "1 successful, 1 failed" in captured.out
    assert "(gallery: /view/a.example/" in captured.out
    assert "full_page.png" in captured.out
    assert "Batch aborted at https://bad.example" in captured.err
    assert (results_dir / "a.example").is_dir()


def test_cleanup_stats(sample_session, results_dir, capsys):
    assert main(["cleanup", "--stats", "-o", str(results_dir)]) == 0
    out = capsys.readouterr().out
    assert "sessions: 1" in out
    assert "files:    3" in out


def test_cleanup_all_asks_first(sample_session, results_dir, monkeypatch, capsys):
    monkeypatch.setattr("builtins.input", lambda prompt: "n")
    assert main(["cleanup", "--all", "-o", str(results_dir)]) == 1
    assert "Aborted" in capsys.readouterr().out
    assert (results_dir / "example.com").exists()

    assert main(["cleanup", "--all", "-y", "-o", str(results_dir)]) == 0
    assert results_dir.is_dir()
    assert list(results_dir.iterdir()) == []


def test_cleanup_older_than(results_dir, capsys):
    make_session(results_dir, "example.com", "2001-01-01T00_00_00_000Z")
    assert main(["cleanup", "--older-than", "1", "--json", "-o", str(results_dir)]) == 0
    data = json.loads(capsys.readouterr().out)
    assert data["deleted_sessions"] == 1


def test_cleanup_rejects_negative_age(sample_session, results_dir, capsys):
    assert main(["cleanup", "--older-than", "-1", "-o", str(results_dir)]) == 1
    assert "--older-than must not be negative, got -1" in capsys.readouterr().err
    assert (results_dir / "example.com").is_dir()


def test_details(sample_session, results_dir, capsys):
    domain, sid = sample_session
    assert main(["details", "-o", str(results_dir), "--base-url", "http://203.0.113.7:9000/"]) == 0
    out = capsys.readouterr().out
    assert f"Session: {domain}/{sid}" in out
    assert f"http://203.0.113.7:9000/view/{domain}/{sid}" in out
    assert "full_page.png" in out and "40x30" in out


def test_details_empty_store(results_dir, capsys):
    assert main(["details", "-o", str(results_dir)]) == 1
    assert "No sessions found" in capsys.readouterr().out


def test_config_commands(isolated_env, capsys):
    assert main(["config", "--get", "screenshot.width"]) == 0
    assert capsys.readouterr().out.strip() == "1280"

    assert main(["config", "--get", "screenshot.nope"]) == 1
    assert "Unknown configuration key" in capsys.readouterr().err

    assert main(["config", "--init"]) == 0
    assert (isolated_env / ".pscreen.json").is_file()
    assert main(["config", "--init"]) == 1
    capsys.readouterr()

    assert main(["config", "--show"]) == 0
    shown = json.loads(capsys.readouterr().out)
    assert shown["screenshot"]["output_dir"] == "./results"


def test_env_overrides_reach_the_cli(monkeypatch, capsys):
    monkeypatch.setenv("PSCREEN_HEIGHT", "900")
    assert main(["config", "--get", "screenshot.height"]) == 0
    assert capsys.readouterr().out.strip() == "900"


def test_debug(capsys):
    assert main(["debug"]) == 0
    out = capsys.readouterr().out
    assert f"pscreen {__version__}" in out
    assert "Output dir:" in out
