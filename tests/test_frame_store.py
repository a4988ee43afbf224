import pytest

from common.schemas import AnalysisResult, AnalyzedFrame
from services.lobby_monitor.frame_store import FrameStore


def make_record(tmp_path, frame_id: int) -> AnalyzedFrame:
    path = tmp_path / f"frame_{frame_id}.jpg"
    path.write_bytes(b"jpeg")
    return AnalyzedFrame(
        id=frame_id,
        filename=path.name,
        file_path=str(path),
        url_path=f"/captures/{path.name}",
        captured_at="2026-01-01T00:00:00+00:00",
        scenario_id="lobby",
        mode="cloud",
        analysis=AnalysisResult(timestamp=frame_id),
    )


def test_push_keeps_most_recent_first(tmp_path):
    store = FrameStore(max_frames=3)
    for i in (1, 2, 3):
        store.push(make_record(tmp_path, i))

    assert [f.id for f in store.list()] == [3, 2, 1]
    assert store.get(2).id == 2
    assert store.get(99) is None


def test_overflow_evicts_oldest_and_deletes_its_file(tmp_path):
    store = FrameStore(max_frames=2)
    first = make_record(tmp_path, 1)
    store.push(first)
    store.push(make_record(tmp_path, 2))

    evicted = store.push(make_record(tmp_path, 3))

    assert evicted.id == 1
    assert len(store) == 2
    assert [f.id for f in store.list()] == [3, 2]
    assert not (tmp_path / first.filename).exists()
    assert (tmp_path / "frame_2.jpg").exists()


def test_eviction_tolerates_missing_file(tmp_path):
    store = FrameStore(max_frames=1)
    first = make_record(tmp_path, 1)
    (tmp_path / first.filename).unlink()
    store.push(first)

    assert store.push(make_record(tmp_path, 2)).id == 1


def test_clear_drops_records_and_files(tmp_path):
    store = FrameStore(max_frames=5)
    for i in (1, 2):
        store.push(make_record(tmp_path, i))

    assert store.clear() == 2
    assert len(store) == 0
    assert not (tmp_path / "frame_1.jpg").exists()
    assert not (tmp_path / "frame_2.jpg").exists()


def test_duplicate_id_is_rejected(tmp_path):
    store = FrameStore()
    store.push(make_record(tmp_path, 1))
    with pytest.raises(ValueError):
        store.push(make_record(tmp_path, 1))


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        FrameStore(max_frames=0)
