from __future__ import annotations

import json

import pytest

from vault.boxes import FileBox
from vault.errors import StorageIOError


def _records(path):
    return [json.loads(line) for line in path.read_text("utf-8").splitlines() if line.strip()]


def test_put_get_delete_and_persistence(tmp_path):
    box = FileBox(tmp_path, "primary")
    box.put("a", "1")
    box.put("b", 2)
    box.delete("a")
    box.delete("missing")  # no-op
    box.close()

    reopened = FileBox(tmp_path, "primary")
    assert reopened.to_dict() == {"b": 2}
    assert "a" not in reopened
    assert len(reopened) == 1
    reopened.close()


def test_log_is_append_only_until_compaction(tmp_path):
    box = FileBox(tmp_path, "primary")
    box.put("k", "v1")
    box.put("k", "v2")
    box.close()

    ops = _records(box.path)
    assert [r["op"] for r in ops] == ["put", "put"]
    assert ops[-1]["v"] == "v2"


def test_clear_survives_reopen(tmp_path):
    box = FileBox(tmp_path, "primary")
    box.put_all({"a": 1, "b": 2})
    box.clear()
    box.put("c", 3)
    box.close()

    assert FileBox(tmp_path, "primary").to_dict() == {"c": 3}


def test_torn_tail_is_dropped_and_truncated(tmp_path, caplog):
    box = FileBox(tmp_path, "primary")
    box.put("a", "1")
    box.close()
    good_size = box.path.stat().st_size

    with box.path.open("ab") as f:
        f.write(b'{"op":"put","k":"b","v":"2')  # interrupted write, no newline

    reopened = FileBox(tmp_path, "primary")
    assert reopened.to_dict() == {"a": "1"}
    assert box.path.stat().st_size == good_size
    assert "torn tail" in caplog.text

    # Box is writable again after recovery
    reopened.put("b", "2")
    reopened.close()
    assert FileBox(tmp_path, "primary").to_dict() == {"a": "1", "b": "2"}


def test_corrupt_final_line_treated_as_torn(tmp_path):
    box = FileBox(tmp_path, "primary")
    box.put("a", "1")
    box.close()
    with box.path.open("ab") as f:
        f.write(b"{garbage\n")

    assert FileBox(tmp_path, "primary").to_dict() == {"a": "1"}


def test_corrupt_record_in_middle_raises(tmp_path):
    path = tmp_path / "primary.box"
    path.write_bytes(b'{"op":"put","k":"a","v":1}\n{garbage\n{"op":"put","k":"b","v":2}\n')

    with pytest.raises(StorageIOError):
        FileBox(tmp_path, "primary")


def test_compaction_after_threshold(tmp_path):
    box = FileBox(tmp_path, "primary", compact_threshold=3)
    for i in range(4):
        box.put("k", i)
    box.put("other", "x")
    box.close()

    ops = _records(box.path)
    # Compaction kicked in once three superseded records piled up
    assert len(ops) <= 3
    assert FileBox(tmp_path, "primary").to_dict() == {"k": 3, "other": "x"}


def test_manual_compact_keeps_contents(tmp_path):
    box = FileBox(tmp_path, "primary")
    box.put("a", 1)
    box.delete("a")
    box.put("b", 2)
    assert box.dead_records == 2
    box.compact()
    assert box.dead_records == 0
    box.put("c", 3)
    box.close()

    assert _records(box.path) == [
        {"op": "put", "k": "b", "v": 2},
        {"op": "put", "k": "c", "v": 3},
    ]


def test_closed_box_rejects_writes(tmp_path):
    box = FileBox(tmp_path, "primary")
    box.close()
    with pytest.raises(StorageIOError):
        box.put("a", 1)


def test_delete_from_disk(tmp_path):
    box = FileBox(tmp_path, "primary")
    box.put("a", 1)
    box.delete_from_disk()
    assert not box.path.exists()
    assert len(box) == 0


@pytest.mark.parametrize("name", ["", "a/b", ".hidden"])
def test_invalid_box_names(tmp_path, name):
    with pytest.raises(ValueError):
        FileBox(tmp_path, name)


class _ShortWriteHandle:
    """Writes half of the first payload, then fails like a full disk."""

    def __init__(self, real):
        self._real = real
        self.failed = False

    def write(self, data):
        if not self.failed:
            self.failed = True
            self._real.write(bytes(data[: len(data) // 2]))
            raise OSError(28, "No space left on device")
        return self._real.write(data)

    def fileno(self):
        return self._real.fileno()

    def close(self):
        self._real.close()


def test_failed_write_is_rolled_back_so_later_writes_survive(tmp_path):
    box = FileBox(tmp_path, "primary")
    box.put("a", 1)
    box._fh = _ShortWriteHandle(box._fh)

    with pytest.raises(StorageIOError):
        box.put("b", 2)
    assert "b" not in box

    box.put("c", 3)
    box.close()

    assert _records(box.path) == [
        {"op": "put", "k": "a", "v": 1},
        {"op": "put", "k": "c", "v": 3},
    ]
    assert FileBox(tmp_path, "primary").to_dict() == {"a": 1, "c": 3}


def test_box_refuses_writes_when_rollback_fails(tmp_path, monkeypatch):
    box = FileBox(tmp_path, "primary")
    box.put("a", 1)
    box._fh = _ShortWriteHandle(box._fh)

    def _no_truncate(fd, length):
        raise OSError(5, "Input/output error")

    monkeypatch.setattr("vault.boxes.os.ftruncate", _no_truncate)
    with pytest.raises(StorageIOError):
        box.put("b", 2)
    monkeypatch.undo()

    # The fragment is still on disk; appending after it would be lost on replay
    with pytest.raises(StorageIOError):
        box.put("c", 3)
    box.close()

    assert FileBox(tmp_path, "primary").to_dict() == {"a": 1}


def test_replace_all_is_one_batch_and_survives_reopen(tmp_path):
    box = FileBox(tmp_path, "primary")
    box.put_all({"a": 1, "b": 2})
    box.replace_all({"b": 20, "c": 30})
    box.close()

    ops = [r["op"] for r in _records(box.path)]
    assert ops == ["put", "put", "clear", "put", "put"]
    assert FileBox(tmp_path, "primary").to_dict() == {"b": 20, "c": 30}


def test_replace_all_with_nothing_empties_box(tmp_path):
    box = FileBox(tmp_path, "primary")
    box.put("a", 1)
    box.replace_all({})
    box.close()
    assert FileBox(tmp_path, "primary").to_dict() == {}
