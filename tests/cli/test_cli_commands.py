import json
from unittest.mock import patch

import pytest

from grinder.cli.cli_modular import main
from grinder.cli.commands.load_events import read_event_rows
from grinder.models.database import EventStore


def quiet(level):
    pass


@pytest.fixture
def env(tmp_path):
    values = {
        "DATABASE_URL": f"sqlite:///{tmp_path / 'events.db'}",
        "ARTICLES_DIR": str(tmp_path / "articles"),
    }
    with patch.dict("os.environ", values):
        yield values


def test_read_event_rows_csv(tmp_path):
    path = tmp_path / "events.csv"
    path.write_text(
        "id,url,titleEn,source\n"
        "1,https://local.com/a,Flood waters rise,Local\n"
        "2,,Ship sinks,\n",
        encoding="utf-8",
    )
    rows = read_event_rows(path)
    assert rows[0] == {"id": "1", "url": "https://local.com/a", "titleEn": "Flood waters rise", "source": "Local"}
    assert rows[1]["url"] == ""


def test_read_event_rows_json_and_jsonl(tmp_path):
    records = [{"id": 1, "gnUrl": "https://news.google.com/articles/x", "titleEn": "A"}, {"id": 2, "titleEn": "B"}]
    as_json = tmp_path / "events.json"
    as_json.write_text(json.dumps(records), encoding="utf-8")
    as_jsonl = tmp_path / "events.jsonl"
    as_jsonl.write_text("\n".join(json.dumps(item) for item in records), encoding="utf-8")

    for path in (as_json, as_jsonl):
        rows = read_event_rows(path)
        assert [row["titleEn"] for row in rows] == ["A", "B"]
        assert rows[1]["gnUrl"] == ""


def test_read_event_rows_rejects_other_formats(tmp_path):
    with pytest.raises(ValueError):
        read_event_rows(tmp_path / "events.xlsx")


def test_load_events_command(env, tmp_path, capsys):
    path = tmp_path / "events.csv"
    path.write_text("id,url,titleEn\n1,https://local.com/a,One\n2,https://local.com/b,Two\n", encoding="utf-8")

    assert main(["load-events", str(path)], setup_logging_func=quiet) == 0
    assert "Loaded 2 events" in capsys.readouterr().out

    store = EventStore(env["DATABASE_URL"])
    assert [event.title for event in store.pending_events()] == ["One", "Two"]


def test_load_events_missing_file(env, tmp_path):
    assert main(["load-events", str(tmp_path / "missing.csv")], setup_logging_func=quiet) == 1


def test_acquire_with_nothing_pending(env, capsys):
    assert main(["acquire"], setup_logging_func=quiet) == 0
    assert "No pending events" in capsys.readouterr().out


def test_acquire_unknown_event_id(env):
    assert main(["acquire", "--id", "404"], setup_logging_func=quiet) == 1


def test_cache_probe_command(env, capsys):
    assert main(["cache-probe", "https://example.com/story?utm_source=x"], setup_logging_func=quiet) == 0
    out = capsys.readouterr().out
    assert "URL:     https://example.com/story" in out
    assert "Found:   missing" in out
