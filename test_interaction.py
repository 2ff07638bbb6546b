import pytest
import json
import logging
from datetime import datetime, timezone
from unittest.mock import patch

import jsonschema
import pandas as pd
from click.testing import CliRunner

from loc_explorer import (
    InteractionCoordinator, DatasetNotLoadedError, RecordLoadError,
    LocExplorerError, CategoryShare, Projection, Region,
    apply_control_position, validate_view_model, load_records, main,
)

# ============================================================================
# COORDINATOR: LOADING
# ============================================================================

def test_events_rejected_before_load(data_projection):
    coordinator = InteractionCoordinator(data_projection)
    assert not coordinator.is_loaded
    with pytest.raises(DatasetNotLoadedError):
        coordinator.on_control_change(50)
    with pytest.raises(DatasetNotLoadedError):
        coordinator.on_selection_change(Region(0, 0, 1, 1))
    with pytest.raises(DatasetNotLoadedError):
        coordinator.view_model()

def test_failed_load_stays_unloaded(data_projection, sample_rows):
    del sample_rows[2]["author"]
    coordinator = InteractionCoordinator(data_projection)
    with pytest.raises(RecordLoadError):
        coordinator.load_rows(sample_rows)
    assert not coordinator.is_loaded
    with pytest.raises(DatasetNotLoadedError):
        coordinator.on_control_change(100)

def test_failed_reload_stays_unloaded(data_projection, sample_rows):
    coordinator = InteractionCoordinator(data_projection)
    coordinator.load_rows(sample_rows)
    assert coordinator.is_loaded

    broken = [dict(row) for row in sample_rows]
    broken[4]["line"] = "zero"
    with pytest.raises(RecordLoadError):
        coordinator.load_rows(broken)
    assert not coordinator.is_loaded
    with pytest.raises(DatasetNotLoadedError):
        coordinator.view_model()

    coordinator.load_rows(sample_rows)
    with pytest.raises(FileNotFoundError):
        coordinator.load_path("missing.csv")
    assert not coordinator.is_loaded

def test_load_emits_full_window(data_projection, sample_records):
    coordinator = InteractionCoordinator(data_projection)
    view = coordinator.load(sample_records)

    assert coordinator.is_loaded
    assert view.control_position == 100.0
    assert view.window_cutoff == coordinator.scale.end
    assert [c.id for c in view.visible_commits] == ["aaa1111", "bbb2222", "ccc3333"]
    assert view.visible.total_lines == 7
    assert view.selected_commits == []
    assert view.selection_count_text == "No commits selected"

def test_load_path(data_projection, loc_csv):
    coordinator = InteractionCoordinator(data_projection)
    view = coordinator.load_path(loc_csv)
    assert view.visible.commits == 3

def test_load_logs(data_projection, sample_records, caplog):
    caplog.set_level(logging.DEBUG, logger="loc_explorer")
    coordinator = InteractionCoordinator(data_projection)
    coordinator.load(sample_records)
    assert "Loaded 7 line records into 3 commits" in caplog.text
    assert "3/3 commits visible" in caplog.text

def test_initial_position(data_projection, sample_records):
    coordinator = InteractionCoordinator(data_projection, initial_position=0)
    view = coordinator.load(sample_records)
    assert [c.id for c in view.visible_commits] == ["aaa1111"]

def test_invalid_sort_order(data_projection):
    with pytest.raises(ValueError):
        InteractionCoordinator(data_projection, sort_order="sideways")

def test_empty_dataset(data_projection):
    coordinator = InteractionCoordinator(data_projection)
    view = coordinator.load([])
    assert view.visible_commits == []
    assert view.window_cutoff is None
    assert view.cutoff_label == ""

    view = coordinator.on_control_change(40)
    assert view.visible.commits == 0
    assert view.visible.breakdown == {}

    view = coordinator.on_selection_change(Region(0, 0, 1e12, 24))
    assert view.selected_commits == []
    assert view.selected.total_lines == 0
    validate_view_model(view.to_dict())

# ============================================================================
# COORDINATOR: CONTROL & SELECTION EVENTS
# ============================================================================

def test_two_commit_scenario(data_projection, two_commit_rows):
    coordinator = InteractionCoordinator(data_projection)
    coordinator.load_rows(two_commit_rows)
    t0 = datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)

    position = coordinator.position_for(t0)
    assert position == 0.0
    view = coordinator.on_control_change(position)
    assert [c.id for c in view.visible_commits] == ["A"]
    assert view.visible.total_lines == 3
    assert view.visible.breakdown == {"lang-x": CategoryShare(3, 1.0)}

    view = coordinator.on_control_change(100)
    # lines-desc: the larger commit renders first
    assert [c.id for c in view.visible_commits] == ["B", "A"]
    assert view.visible.total_lines == 8
    assert view.visible.breakdown == {
        "lang-x": CategoryShare(3, pytest.approx(0.375)),
        "lang-y": CategoryShare(5, pytest.approx(0.625)),
    }

def test_control_change_clamps(data_projection, sample_records):
    coordinator = InteractionCoordinator(data_projection)
    coordinator.load(sample_records)
    assert coordinator.on_control_change(250).control_position == 100.0
    view = coordinator.on_control_change(-3)
    assert view.control_position == 0.0
    assert [c.id for c in view.visible_commits] == ["aaa1111"]

def test_cutoff_tracks_control_position(data_projection, sample_records):
    coordinator = InteractionCoordinator(data_projection)
    coordinator.load(sample_records)
    for position in (0, 12.5, 54, 99.9, 100):
        coordinator.on_control_change(position)
        state = coordinator.state
        assert state.window_cutoff == coordinator.scale.invert(state.control_position)

def test_full_window_includes_every_commit(data_projection, sample_records):
    coordinator = InteractionCoordinator(data_projection)
    coordinator.load(sample_records)
    coordinator.on_control_change(10)
    view = coordinator.on_control_change(100)
    assert len(view.visible_commits) == len(coordinator.commits)

def test_selection_outside_all_commits(data_projection, sample_records):
    coordinator = InteractionCoordinator(data_projection)
    coordinator.load(sample_records)
    # y range entirely above the latest hour of day
    view = coordinator.on_selection_change(Region(0, 30, 1e12, 40))
    assert view.selected_commits == []
    assert view.selection_count_text == "No commits selected"
    assert view.selected.commits == 0
    assert view.selected.breakdown == {}

def test_selection_accepts_corner_pairs(data_projection, sample_records):
    coordinator = InteractionCoordinator(data_projection)
    coordinator.load(sample_records)
    view = coordinator.on_selection_change(((0, 19), (1e12, 24)))
    assert [c.id for c in view.selected_commits] == ["bbb2222", "ccc3333"]
    assert view.selection_count_text == "2 commits selected"
    assert view.selected.total_lines == 4
    assert view.selection_region == Region(0, 19, 1e12, 24)

def test_selection_then_clear_round_trip(data_projection, sample_records):
    coordinator = InteractionCoordinator(data_projection)
    baseline = coordinator.load(sample_records)

    selected = coordinator.on_selection_change(Region(0, 0, 1e12, 24))
    assert selected.selected.commits == 3

    cleared = coordinator.clear_selection()
    assert cleared.selection_region is None
    assert cleared.selected.commits == baseline.selected.commits == 0
    assert cleared.selected.breakdown == baseline.selected.breakdown == {}
    assert cleared.selected.to_dict() == baseline.selected.to_dict()

def test_window_change_supersedes_stale_selection(data_projection, sample_records):
    coordinator = InteractionCoordinator(data_projection)
    coordinator.load(sample_records)
    coordinator.on_selection_change(Region(0, 0, 1e12, 24))

    # Commits that leave the window leave the selection too
    view = coordinator.on_control_change(0)
    assert [c.id for c in view.selected_commits] == ["aaa1111"]
    assert view.selected.total_lines == 3

    # The stored region still applies once they come back
    view = coordinator.on_control_change(100)
    assert len(view.selected_commits) == 3

def test_selection_change_does_not_refilter(data_projection, sample_records):
    coordinator = InteractionCoordinator(data_projection)
    coordinator.load(sample_records)
    coordinator.on_control_change(0)

    with patch("loc_explorer.apply_control_position", wraps=apply_control_position) as spy:
        view = coordinator.on_selection_change(Region(0, 0, 1e12, 24))
        spy.assert_not_called()

    # selection only sees the current window
    assert [c.id for c in view.selected_commits] == ["aaa1111"]
    assert view.visible.commits == 1

def test_projection_change_reselects(data_projection, sample_records):
    coordinator = InteractionCoordinator(data_projection)
    coordinator.load(sample_records)
    coordinator.on_selection_change(Region(-1, -1, 1, 1))
    assert coordinator.selected_commits == []

    origin = Projection(x=lambda ts: 0.0, y=lambda hour: 0.0)
    view = coordinator.on_projection_change(origin)
    assert len(view.selected_commits) == 3

def test_degenerate_window_shows_everything(data_projection, row_factory):
    rows = [
        row_factory("c1", "a.py", 1, "py", "Al", "2024-01-01", "10:00:00"),
        row_factory("c2", "b.py", 1, "py", "Bo", "2024-01-01", "10:00:00"),
    ]
    coordinator = InteractionCoordinator(data_projection)
    coordinator.load_rows(rows)
    for position in (0, 50, 100):
        assert len(coordinator.on_control_change(position).visible_commits) == 2

def test_listeners(data_projection, sample_records):
    coordinator = InteractionCoordinator(data_projection)
    seen = []
    coordinator.subscribe(seen.append)

    coordinator.load(sample_records)
    coordinator.on_control_change(0)
    last = coordinator.on_selection_change(Region(0, 0, 1e12, 24))
    assert len(seen) == 3
    assert seen[-1] == last

    coordinator.unsubscribe(seen.append)
    coordinator.clear_selection()
    assert len(seen) == 3

def test_find_commit(data_projection, sample_records):
    coordinator = InteractionCoordinator(data_projection)
    coordinator.load(sample_records)
    assert coordinator.find_commit("bbb").id == "bbb2222"
    assert coordinator.find_commit("ccc3333").id == "ccc3333"
    with pytest.raises(LocExplorerError, match="No commit matches"):
        coordinator.find_commit("zzz")
    with pytest.raises(LocExplorerError, match="ambiguous"):
        coordinator.find_commit("")

# ============================================================================
# VIEW-MODEL EXPORT
# ============================================================================

def test_view_model_document(data_projection, sample_records):
    coordinator = InteractionCoordinator(data_projection)
    coordinator.load(sample_records)
    view = coordinator.on_selection_change(Region(0, 9, 1e12, 10))

    document = view.to_dict()
    validate_view_model(document)
    json.dumps(document)

    assert document["selected_commit_ids"] == ["aaa1111"]
    assert document["selection_count_text"] == "1 commits selected"
    assert document["visible_commits"][0]["day_period"] == "morning"
    assert "lines" not in document["visible_commits"][0]
    assert document["summaries"]["selected"]["breakdown"]["js"]["percent"] == "100%"
    assert document["cutoff_label"] == "February 3, 2024 at 11:45 PM"

def test_view_model_schema_rejects_bad_document(data_projection, sample_records):
    coordinator = InteractionCoordinator(data_projection)
    document = coordinator.load(sample_records).to_dict()
    document["control_position"] = 150
    with pytest.raises(jsonschema.ValidationError):
        validate_view_model(document)

# ============================================================================
# CLI TESTS
# ============================================================================

def test_cli_stats(loc_csv):
    runner = CliRunner()
    result = runner.invoke(main, ["--no-color", "stats", loc_csv])
    assert result.exit_code == 0
    assert "TOTAL LOC: 7" in result.output
    assert "MAX LINES: 10" in result.output
    assert "js: 4 lines (57.1%)" in result.output

def test_cli_stats_position(loc_csv):
    runner = CliRunner()
    result = runner.invoke(main, ["-q", "stats", loc_csv, "--position", "0"])
    assert result.exit_code == 0
    assert "TOTAL LOC: 3" in result.output
    assert "Loading" not in result.output

def test_cli_commits_sorted(loc_csv):
    runner = CliRunner()
    result = runner.invoke(main, ["-q", "commits", loc_csv, "--sort", "chronological"])
    assert result.exit_code == 0
    listed = [line.split()[0] for line in result.output.splitlines() if line.strip()]
    assert listed == ["aaa1111", "bbb2222", "ccc3333"]

def test_cli_select(loc_csv):
    runner = CliRunner()
    result = runner.invoke(main, [
        "-q", "select", loc_csv,
        "--region", "2024-02-01T00:00:00-08:00", "0", "2024-02-01T23:59:00-08:00", "24",
    ])
    assert result.exit_code == 0
    assert "1 commits selected" in result.output
    assert "js: 3 lines (100%)" in result.output

    result = runner.invoke(main, [
        "-q", "select", loc_csv,
        "--region", "2024-01-01T00:00:00", "30", "2024-12-31T00:00:00", "40",
    ])
    assert result.exit_code == 0
    assert "No commits selected" in result.output

def test_cli_select_requires_region(loc_csv):
    runner = CliRunner()
    result = runner.invoke(main, ["-q", "select", loc_csv])
    assert result.exit_code == 2

def test_cli_files(loc_csv):
    runner = CliRunner()
    result = runner.invoke(main, ["-q", "files", loc_csv])
    assert result.exit_code == 0
    assert result.output.splitlines()[0] == "src/main.js  4 lines"

def test_cli_show(loc_csv):
    runner = CliRunner()
    result = runner.invoke(main, ["-q", "show", loc_csv, "bbb"])
    assert result.exit_code == 0
    assert "AUTHOR: Bob" in result.output
    assert "LINES: 3" in result.output

    result = runner.invoke(main, ["-q", "show", loc_csv, "zzz"])
    assert result.exit_code == 1
    assert "No commit matches" in result.output

def test_cli_export(loc_csv, tmp_path):
    out = tmp_path / "out" / "view.json"
    runner = CliRunner()
    result = runner.invoke(main, [
        "--no-color", "export", loc_csv, "-o", str(out), "--position", "100",
        "--region", "2024-01-01T00:00:00Z", "0", "2024-12-31T00:00:00Z", "24",
    ])
    assert result.exit_code == 0
    assert "View-model written" in result.output

    document = json.loads(out.read_text(encoding="utf-8"))
    validate_view_model(document)
    assert len(document["visible_commits"]) == 3
    assert len(document["selected_commit_ids"]) == 3

def test_cli_bad_log(tmp_path, sample_rows):
    for row in sample_rows:
        del row["depth"]
    path = tmp_path / "broken.csv"
    pd.DataFrame(sample_rows).to_csv(path, index=False)

    runner = CliRunner()
    result = runner.invoke(main, ["--no-color", "stats", str(path)])
    assert result.exit_code == 1
    assert "Failed to load commit log" in result.output
    assert "depth" in result.output

def test_cli_config_file(loc_csv, tmp_path):
    (tmp_path / ".loc-explorer.yaml").write_text(
        "position: 0\ncommit_url_base: https://example.com/commit/\n", encoding="utf-8"
    )
    runner = CliRunner()
    result = runner.invoke(main, ["-q", "stats", loc_csv])
    assert result.exit_code == 0
    assert "TOTAL LOC: 3" in result.output

    result = runner.invoke(main, ["-q", "show", loc_csv, "aaa"])
    assert "URL: https://example.com/commit/aaa1111" in result.output

def test_cli_bad_config(loc_csv, tmp_path):
    config = tmp_path / "settings.txt"
    config.write_text("position = 3", encoding="utf-8")
    runner = CliRunner()
    result = runner.invoke(main, ["--config", str(config), "stats", loc_csv])
    assert result.exit_code == 1
    assert "Invalid configuration" in result.output

@pytest.mark.parametrize("content", ["sort: newest\n", "position: halfway\n"])
def test_cli_bad_config_values(loc_csv, tmp_path, content):
    config = tmp_path / "settings.yaml"
    config.write_text(content, encoding="utf-8")
    runner = CliRunner()
    result = runner.invoke(main, ["--config", str(config), "stats", loc_csv])
    assert result.exit_code == 1
    assert "Invalid configuration" in result.output
    assert "Failed to load commit log" not in result.output

def test_cli_reports_discovered_config(loc_csv, tmp_path):
    (tmp_path / ".loc-explorer.yaml").write_text("sort: chronological\n", encoding="utf-8")
    runner = CliRunner()
    result = runner.invoke(main, ["--no-color", "commits", loc_csv])
    assert result.exit_code == 0
    assert "Using configuration from" in result.output
    assert ".loc-explorer.yaml" in result.output

def test_cli_warns_on_empty_log(tmp_path):
    path = tmp_path / "empty.csv"
    path.write_text("", encoding="utf-8")
    runner = CliRunner()
    result = runner.invoke(main, ["--no-color", "stats", str(path)])
    assert result.exit_code == 0
    assert "No line records found" in result.output

def test_cli_version():
    runner = CliRunner()
    result = runner.invoke(main, ["--version"])
    assert result.exit_code == 0
    assert "1.0.0" in result.output
