import pytest

from source_query.errors import VectorIndexError
from source_query.models import EmbeddingRecord
from source_query.retrieval import FaissVectorIndex


def record(vid, values, **metadata):
    return EmbeddingRecord(id=vid, values=values, metadata=metadata)


async def test_query_ranks_by_cosine_similarity(index):
    await index.upsert([
        record("a-chunk-0", [1.0, 0.0, 0.0], source_id="a", title="A"),
        record("b-chunk-0", [0.0, 1.0, 0.0], source_id="b", title="B"),
        record("c-chunk-0", [0.7, 0.7, 0.0], source_id="c", title="C"),
    ])

    matches = await index.query([1.0, 0.1, 0.0], top_k=2)

    assert [m.id for m in matches] == ["a-chunk-0", "c-chunk-0"]
    assert matches[0].score > matches[1].score
    assert matches[0].metadata["title"] == "A"


async def test_query_without_metadata(index):
    await index.upsert([record("a-chunk-0", [1.0, 0.0], title="A")])
    matches = await index.query([1.0, 0.0], top_k=5, include_metadata=False)
    assert len(matches) == 1
    assert matches[0].metadata == {}


async def test_empty_index_returns_no_matches(index):
    assert await index.query([1.0, 0.0], top_k=5) == []


async def test_upsert_is_idempotent_by_id(index):
    await index.upsert([record("a-chunk-0", [1.0, 0.0], text="old")])
    await index.upsert([record("a-chunk-0", [0.0, 1.0], text="new")])

    assert await index.count() == 1
    matches = await index.query([0.0, 1.0], top_k=1)
    assert matches[0].metadata["text"] == "new"
    assert matches[0].score == pytest.approx(1.0, abs=1e-5)


async def test_delete_by_filter(index):
    await index.upsert([
        record("a-chunk-0", [1.0, 0.0], source_id="a"),
        record("a-chunk-1", [0.9, 0.1], source_id="a"),
        record("b-chunk-0", [0.0, 1.0], source_id="b"),
    ])

    assert await index.delete_by_filter({"source_id": "a"}) == 2
    assert await index.count() == 1
    assert [m.id for m in await index.query([1.0, 0.0], top_k=5)] == ["b-chunk-0"]


async def test_delete_by_empty_filter_is_refused(index):
    with pytest.raises(VectorIndexError):
        await index.delete_by_filter({})


async def test_delete_all(index):
    await index.upsert([record("a-chunk-0", [1.0, 0.0])])
    await index.delete_all()
    assert await index.count() == 0
    assert await index.query([1.0, 0.0], top_k=1) == []


async def test_dimension_mismatch_is_rejected(index):
    await index.upsert([record("a-chunk-0", [1.0, 0.0, 0.0])])
    with pytest.raises(VectorIndexError, match="dimension"):
        await index.upsert([record("b-chunk-0", [1.0, 0.0])])


async def test_persists_and_reloads(tmp_path):
    path = tmp_path / "persisted"
    first = FaissVectorIndex("fake-model", path)
    await first.upsert([
        record("a-chunk-0", [1.0, 0.0], source_id="a"),
        record("b-chunk-0", [0.0, 1.0], source_id="b"),
    ])

    second = FaissVectorIndex("fake-model", path)
    assert await second.count() == 2
    matches = await second.query([0.0, 1.0], top_k=1)
    assert matches[0].id == "b-chunk-0"
    assert matches[0].metadata == {"source_id": "b"}


async def test_other_model_is_rejected_until_cleared(tmp_path):
    path = tmp_path / "persisted"
    await FaissVectorIndex("model-a", path).upsert([record("a-chunk-0", [1.0, 0.0])])

    other = FaissVectorIndex("model-b", path)
    with pytest.raises(VectorIndexError, match="model-a"):
        await other.upsert([record("b-chunk-0", [0.0, 1.0, 0.0])])

    await other.delete_all()
    await other.upsert([record("b-chunk-0", [0.0, 1.0, 0.0])])
    assert await FaissVectorIndex("model-b", path).count() == 1


async def test_truncated_side_file_starts_empty(tmp_path):
    path = tmp_path / "persisted"
    await FaissVectorIndex("fake-model", path).upsert([record("a-chunk-0", [1.0, 0.0])])
    id_map = path / "vector_id_map.json"
    id_map.write_text(id_map.read_text()[:10])

    recovered = FaissVectorIndex("fake-model", path)

    assert await recovered.count() == 0
    assert (path / "vector_id_map.json.corrupt").exists()
    assert not id_map.exists()

    await recovered.upsert([record("b-chunk-0", [0.0, 1.0, 0.0])])
    assert await FaissVectorIndex("fake-model", path).count() == 1


async def test_save_leaves_no_temp_files(tmp_path):
    path = tmp_path / "persisted"
    index = FaissVectorIndex("fake-model", path)
    await index.upsert([record("a-chunk-0", [1.0, 0.0])])
    await index.delete_by_filter({"missing": "x"})
    await index.upsert([record("b-chunk-0", [0.0, 1.0])])

    assert sorted(p.name for p in path.iterdir()) == ["vector_id_map.json", "vectors.faiss"]


async def test_batch_saves_once_at_the_end(tmp_path, monkeypatch):
    path = tmp_path / "persisted"
    index = FaissVectorIndex("fake-model", path)
    saves = []
    real_save = index._save
    monkeypatch.setattr(index, "_save", lambda: saves.append(1) or real_save())

    async with index.batch():
        await index.upsert([record("a-chunk-0", [1.0, 0.0], source_id="a")])
        await index.delete_by_filter({"source_id": "a"})
        await index.upsert([record("b-chunk-0", [0.0, 1.0], source_id="b")])
        assert saves == []

    assert saves == [1]
    assert await FaissVectorIndex("fake-model", path).count() == 1
