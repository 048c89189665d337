import json

from coach_core import main as cli
from coach_core.settings import settings

from factories import make_snapshot


def write_match(path, snapshots, extra_lines=()):
    lines = [json.dumps(s.to_dict()) for s in snapshots]
    lines[1:1] = list(extra_lines)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def test_read_snapshots_skips_unreadable_lines(tmp_path):
    path = write_match(
        tmp_path / "match.jsonl",
        [make_snapshot(1), make_snapshot(2, seconds=1)],
        extra_lines=["{not json", json.dumps({"timestamp": 1}), ""],
    )

    snapshots = list(cli.read_snapshots(path))

    assert [s.sequence_id for s in snapshots] == [1, 2]


def test_fast_replay_runs_a_match(tmp_path, monkeypatch, capsys):
    monkeypatch.setattr(settings, "db_path", tmp_path / "coach.sqlite3")
    monkeypatch.setattr(settings, "rules_config_path", tmp_path / "rules.yaml")
    monkeypatch.setattr(settings, "replay_mode", "fast")
    monkeypatch.setattr(settings, "retry_base_delay_seconds", 0.0)
    monkeypatch.setattr(cli, "OllamaClient", lambda: None)

    path = write_match(
        tmp_path / "match.jsonl",
        [
            make_snapshot(1, health=30),
            make_snapshot(2, seconds=2, health=30, position=(600.0, 0.0), kills=1),
            make_snapshot(3, seconds=4, health=30, position=(650.0, 0.0), kills=1),
        ],
    )

    summary = cli.replay(path)

    assert summary["runtime"]["snapshots_processed"] == 3
    assert summary["runtime"]["decisions_made"] >= 1
    rules = {rule["rule_id"]: rule for rule in summary["rules"]}
    assert rules["critical_position_analysis"]["applications"] == 1
    assert "Analyze and advise on a dangerous position" in capsys.readouterr().out

    cli.print_summary(summary)
    assert "SESSION SUMMARY" in capsys.readouterr().out


def test_main_rejects_missing_file(tmp_path, monkeypatch):
    monkeypatch.setattr(cli, "configure_logging", lambda *args, **kwargs: None)
    monkeypatch.setattr(cli.signal, "signal", lambda *args: None)
    assert cli.main([str(tmp_path / "absent.jsonl")]) == 1
