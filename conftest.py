import pytest
import pandas as pd
from loc_explorer import (
    ProgressReporter, Projection, load_records, aggregate_commits,
)

LOC_COLUMNS = [
    "commit", "file", "line", "depth", "length", "type",
    "author", "date", "time", "timezone", "datetime",
]


def make_row(commit, file, line, type_, author, date, clock, tz="-08:00",
             depth=1, length=20):
    return {
        "commit": commit,
        "file": file,
        "line": str(line),
        "depth": str(depth),
        "length": str(length),
        "type": type_,
        "author": author,
        "date": date,
        "time": clock,
        "timezone": tz,
        "datetime": f"{date}T{clock}{tz}",
    }


@pytest.fixture
def row_factory():
    return make_row


@pytest.fixture
def quiet_reporter():
    return ProgressReporter(quiet=True)


@pytest.fixture
def data_projection():
    return Projection.data_space()


@pytest.fixture
def sample_rows():
    """Three commits, two authors, three files, spanning three days."""
    return [
        # aaa1111: Alice, morning, 3 lines of js
        make_row("aaa1111", "src/main.js", 1, "js", "Alice", "2024-02-01", "09:30:00", depth=0, length=12),
        make_row("aaa1111", "src/main.js", 2, "js", "Alice", "2024-02-01", "09:30:00", depth=1, length=40),
        make_row("aaa1111", "src/main.js", 3, "js", "Alice", "2024-02-01", "09:30:00", depth=2, length=18),
        # bbb2222: Bob, evening, css + html
        make_row("bbb2222", "style.css", 1, "css", "Bob", "2024-02-02", "19:15:00", depth=0, length=8),
        make_row("bbb2222", "style.css", 2, "css", "Bob", "2024-02-02", "19:15:00", depth=1, length=30),
        make_row("bbb2222", "index.html", 7, "html", "Bob", "2024-02-02", "19:15:00", depth=4, length=95),
        # ccc3333: Alice, night, one more js line in main.js
        make_row("ccc3333", "src/main.js", 10, "js", "Alice", "2024-02-03", "23:45:00", depth=3, length=60),
    ]


@pytest.fixture
def sample_records(sample_rows):
    return load_records(sample_rows)


@pytest.fixture
def sample_commits(sample_records):
    return aggregate_commits(sample_records)


@pytest.fixture
def two_commit_rows():
    """Commit A: 3 lang-x lines at T0. Commit B: 5 lang-y lines one day later."""
    rows = [
        make_row("A", "a.x", i, "lang-x", "Ann", "2024-03-01", "10:00:00", tz="+00:00")
        for i in range(1, 4)
    ]
    rows += [
        make_row("B", "b.y", i, "lang-y", "Ben", "2024-03-02", "10:00:00", tz="+00:00")
        for i in range(1, 6)
    ]
    return rows


@pytest.fixture
def loc_csv(tmp_path, sample_rows):
    path = tmp_path / "loc.csv"
    pd.DataFrame(sample_rows, columns=LOC_COLUMNS).to_csv(path, index=False)
    return str(path)
