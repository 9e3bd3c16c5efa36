"""Vector index over chunk embeddings using FAISS."""

import asyncio
import json
import os
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator

import faiss
import numpy as np
import structlog

from source_query.errors import VectorIndexError
from source_query.models import EmbeddingRecord, VectorMatch

logger = structlog.get_logger()

INDEX_FILE = "vectors.faiss"
ID_MAP_FILE = "vector_id_map.json"


class VectorIndex(ABC):
    """Similarity index keyed by vector id, with per-vector metadata."""

    @abstractmethod
    async def upsert(self, records: list[EmbeddingRecord]) -> int:
        """Insert or replace records. Returns the number written."""
        pass

    @abstractmethod
    async def query(
        self, vector: list[float], top_k: int, include_metadata: bool = True
    ) -> list[VectorMatch]:
        """Return up to top_k matches ordered by descending score."""
        pass

    @abstractmethod
    async def delete_by_filter(self, filter: dict[str, Any]) -> int:
        """Delete every vector whose metadata matches all filter items."""
        pass

    @abstractmethod
    async def delete_all(self):
        pass

    @abstractmethod
    async def count(self) -> int:
        pass

    @asynccontextmanager
    async def batch(self) -> AsyncIterator[None]:
        """Group several writes; implementations may persist once at the end."""
        yield


class FaissVectorIndex(VectorIndex):
    """
    Cosine-similarity index using FAISS inner product over L2-normalized vectors.

    String vector ids are mapped to FAISS int64 ids; metadata and the id map
    live in a JSON side file next to the FAISS index. The index is bound to
    one embedding model and dimension; vectors from another model are
    rejected until `delete_all` clears it.

    Both files are replaced atomically on save, and saving runs in a worker
    thread. An unreadable pair is renamed to `*.corrupt` and the index starts
    empty.
    """

    def __init__(self, model_name: str, index_dir: Path | str | None = None):
        self.model_name = model_name
        self.index_dir = Path(index_dir) if index_dir is not None else None
        self._lock = asyncio.Lock()

        self._index: faiss.IndexIDMap2 | None = None
        self._dimension: int | None = None
        self._ids: dict[str, int] = {}
        self._metadata: dict[int, dict[str, Any]] = {}
        self._next_id = 0
        self._stored_model: str | None = None
        self._batch_depth = 0
        self._dirty = False

        if self.index_dir is not None:
            self._load()

    # Persistence

    @property
    def _index_path(self) -> Path:
        return self.index_dir / INDEX_FILE

    @property
    def _id_map_path(self) -> Path:
        return self.index_dir / ID_MAP_FILE

    def _load(self):
        if not self._index_path.exists() or not self._id_map_path.exists():
            return

        try:
            self._read()
        except VectorIndexError as e:
            # Unreadable files are kept aside and the index starts empty
            logger.warning("vector_index_load_failed", path=str(self.index_dir), error=e.message)
            for path in (self._index_path, self._id_map_path):
                if path.exists():
                    os.replace(path, path.with_name(path.name + ".corrupt"))
            self._reset_state()
            return

        if self._stored_model and self._stored_model != self.model_name:
            logger.warning(
                "vector_index_model_mismatch",
                stored_model=self._stored_model,
                configured_model=self.model_name,
            )

        logger.info("vector_index_loaded", vectors=len(self._ids), dimension=self._dimension)

    def _read(self):
        try:
            id_map = json.loads(self._id_map_path.read_text())
            index = faiss.read_index(str(self._index_path))
            dimension = int(id_map["dimension"])
            ids = {str(k): int(v) for k, v in id_map["ids"].items()}
            metadata = {int(k): v for k, v in id_map["metadata"].items()}
            next_id = int(id_map["next_id"])
            stored_model = id_map.get("model_name")
        except (OSError, RuntimeError, ValueError, KeyError, TypeError, AttributeError) as e:
            raise VectorIndexError(f"Failed to load vector index: {e}") from e

        if index.ntotal != len(ids):
            raise VectorIndexError(
                f"Failed to load vector index: {index.ntotal} vectors but {len(ids)} ids"
            )

        self._index = index
        self._dimension = dimension
        self._ids = ids
        self._metadata = metadata
        self._next_id = next_id
        self._stored_model = stored_model

    def _reset_state(self):
        self._index = None
        self._dimension = None
        self._ids = {}
        self._metadata = {}
        self._next_id = 0
        self._stored_model = None

    def _save(self):
        if self.index_dir is None:
            return

        self.index_dir.mkdir(parents=True, exist_ok=True)
        if self._index is None:
            self._index_path.unlink(missing_ok=True)
            self._id_map_path.unlink(missing_ok=True)
            return

        _write_atomic(self._index_path, lambda tmp: faiss.write_index(self._index, str(tmp)))
        id_map = json.dumps({
            "ids": self._ids,
            "metadata": {str(k): v for k, v in self._metadata.items()},
            "next_id": self._next_id,
            "dimension": self._dimension,
            "model_name": self._stored_model or self.model_name,
        })
        _write_atomic(self._id_map_path, lambda tmp: tmp.write_text(id_map))

    async def _persist(self):
        """Write the index to disk unless a batch is open. Call with the lock held."""
        self._dirty = True
        if self._batch_depth == 0:
            await asyncio.to_thread(self._save)
            self._dirty = False

    @asynccontextmanager
    async def batch(self) -> AsyncIterator[None]:
        """Defer saving until the outermost batch closes."""
        self._batch_depth += 1
        try:
            yield
        finally:
            self._batch_depth -= 1
            if self._batch_depth == 0 and self._dirty:
                async with self._lock:
                    await self._persist()

    # Helpers

    def _check_model(self):
        if self._stored_model and self._stored_model != self.model_name:
            raise VectorIndexError(
                f"Vector index was built with model '{self._stored_model}'; "
                "clear it before using a different embedding model"
            )

    def _to_array(self, vectors: list[list[float]]) -> np.ndarray:
        array = np.asarray(vectors, dtype="float32")
        if array.ndim != 2:
            raise VectorIndexError("Vectors must be a list of equal-length lists")
        if self._dimension is not None and array.shape[1] != self._dimension:
            raise VectorIndexError(
                f"Vector dimension {array.shape[1]} does not match index dimension {self._dimension}"
            )
        faiss.normalize_L2(array)
        return array

    def _remove(self, vector_ids: list[str]) -> int:
        faiss_ids = [self._ids.pop(vid) for vid in vector_ids if vid in self._ids]
        if faiss_ids and self._index is not None:
            self._index.remove_ids(np.asarray(faiss_ids, dtype="int64"))
        for fid in faiss_ids:
            self._metadata.pop(fid, None)
        return len(faiss_ids)

    # VectorIndex

    async def upsert(self, records: list[EmbeddingRecord]) -> int:
        if not records:
            return 0

        # Last record wins for a repeated id
        unique = list({record.id: record for record in records}.values())

        async with self._lock:
            self._check_model()
            vectors = self._to_array([record.values for record in unique])

            if self._index is None:
                self._dimension = vectors.shape[1]
                self._index = faiss.IndexIDMap2(faiss.IndexFlatIP(self._dimension))

            self._remove([record.id for record in unique])

            faiss_ids = np.arange(self._next_id, self._next_id + len(unique), dtype="int64")
            self._next_id += len(unique)
            self._index.add_with_ids(vectors, faiss_ids)

            for record, fid in zip(unique, faiss_ids.tolist()):
                self._ids[record.id] = fid
                self._metadata[fid] = dict(record.metadata)

            await self._persist()

        logger.debug("vectors_upserted", count=len(unique))
        return len(unique)

    async def query(
        self, vector: list[float], top_k: int, include_metadata: bool = True
    ) -> list[VectorMatch]:
        async with self._lock:
            self._check_model()
            if self._index is None or not self._ids:
                return []

            query = self._to_array([vector])
            k = min(top_k, len(self._ids))
            scores, labels = self._index.search(query, k)

            reverse = {fid: vid for vid, fid in self._ids.items()}
            matches = []
            for score, fid in zip(scores[0], labels[0]):
                if fid < 0 or int(fid) not in reverse:
                    continue
                matches.append(
                    VectorMatch(
                        id=reverse[int(fid)],
                        score=float(score),
                        metadata=dict(self._metadata.get(int(fid), {})) if include_metadata else {},
                    )
                )

        return matches

    async def delete_by_filter(self, filter: dict[str, Any]) -> int:
        if not filter:
            raise VectorIndexError("Refusing to delete by an empty filter")

        async with self._lock:
            reverse = {fid: vid for vid, fid in self._ids.items()}
            doomed = [
                reverse[fid]
                for fid, meta in self._metadata.items()
                if fid in reverse and all(meta.get(k) == v for k, v in filter.items())
            ]
            removed = self._remove(doomed)
            if removed:
                await self._persist()

        logger.debug("vectors_deleted", filter=filter, count=removed)
        return removed

    async def delete_all(self):
        async with self._lock:
            self._reset_state()
            await self._persist()

        logger.info("vector_index_cleared")

    async def count(self) -> int:
        return len(self._ids)


def _write_atomic(path: Path, write):
    """Write through a temp file and rename it over *path*."""
    tmp = path.with_name(path.name + ".tmp")
    write(tmp)
    os.replace(tmp, path)
