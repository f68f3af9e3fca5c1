import json
import os
import sys
from datetime import datetime, timezone

import pytest

from replbridge.utils.helpers import age_seconds, atomic_write_json, parse_iso


def test_atomic_write_json_replaces_contents(tmp_path):
    target = tmp_path / "meta.json"
    atomic_write_json(target, {"pid": 1})
    atomic_write_json(target, {"pid": 2})
    assert json.loads(target.read_text(encoding="utf-8")) == {"pid": 2}
    assert [p.name for p in tmp_path.iterdir()] == ["meta.json"]


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX permission bits")
def test_atomic_write_json_sets_mode(tmp_path):
    target = tmp_path / "meta.json"
    atomic_write_json(target, {"pid": 1})
    assert os.stat(target).st_mode & 0o777 == 0o600


def test_failed_write_keeps_previous_record_and_leaves_no_temp(tmp_path):
    target = tmp_path / "meta.json"
    atomic_write_json(target, {"pid": 1, "socketPath": "/tmp/a.sock"})

    with pytest.raises(TypeError):
        atomic_write_json(target, {"pid": 2, "handle": object()})

    assert json.loads(target.read_text(encoding="utf-8")) == {"pid": 1, "socketPath": "/tmp/a.sock"}
    assert [p.name for p in tmp_path.iterdir()] == ["meta.json"]


def test_failed_first_write_creates_nothing(tmp_path):
    target = tmp_path / "sub" / "meta.json"
    with pytest.raises(TypeError):
        atomic_write_json(target, {"handle": object()})
    assert list(target.parent.iterdir()) == []


@pytest.mark.parametrize(
    "value",
    ["2024-05-01T12:00:00Z", "2024-05-01T12:00:00+00:00", "2024-05-01T12:00:00"],
)
def test_parse_iso_normalizes_to_utc(value):
    assert parse_iso(value) == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize("value", ["", "   ", "yesterday"])
def test_parse_iso_rejects_garbage(value):
    assert parse_iso(value) is None
    assert age_seconds(value) is None


def test_age_seconds_is_positive_for_past():
    assert age_seconds("2000-01-01T00:00:00Z") > 0
