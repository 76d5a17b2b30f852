# shadowsync/tests/test_checkpoint.py
import json

from shadowsync.checkpoint import Checkpoint, InMemoryCheckpointStore, JsonCheckpointStore


def test_missing_file_loads_none(tmp_path):
    assert JsonCheckpointStore(str(tmp_path / "none.json")).load() is None


def test_save_and_load(tmp_path):
    path = tmp_path / "sub" / "state.json"
    store = JsonCheckpointStore(str(path))
    store.save(Checkpoint(123, 1700000000.0))
    assert json.loads(path.read_text())["last_processed_position"] == 123
    assert store.load() == Checkpoint(123, 1700000000.0)
    assert not (tmp_path / "sub" / "state.json.tmp").exists()


def test_save_position_overwrites(tmp_path):
    store = JsonCheckpointStore(str(tmp_path / "state.json"))
    store.save_position(5)
    cp = store.save_position(9)
    assert store.load().last_processed_position == 9
    assert cp.updated_ts > 0


def test_corrupt_file_starts_fresh(tmp_path):
    path = tmp_path / "state.json"
    path.write_text("{not json")
    assert JsonCheckpointStore(str(path)).load() is None
    path.write_text(json.dumps({"something": 1}))
    assert JsonCheckpointStore(str(path)).load() is None
    path.write_text(json.dumps({"last_processed_position": -4}))
    assert JsonCheckpointStore(str(path)).load() is None


def test_in_memory_store():
    store = InMemoryCheckpointStore()
    assert store.load() is None
    store.save_position(3)
    assert store.load().last_processed_position == 3
    assert store.saves == 1
