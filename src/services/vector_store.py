import faiss
import numpy as np
from typing import Generic, List, Sequence, Tuple, TypeVar

T = TypeVar("T")


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Normalized dot product in [-1, 1]; 0.0 when either vector has no length.
    """
    va = np.asarray(a, dtype="float64")
    vb = np.asarray(b, dtype="float64")
    if va.shape != vb.shape:
        raise ValueError(f"Embeddings must have same dimension ({va.shape} vs {vb.shape})")

    norm = np.linalg.norm(va) * np.linalg.norm(vb)
    if norm == 0.0:
        return 0.0
    return float(np.clip(np.dot(va, vb) / norm, -1.0, 1.0))


class SimilarityIndex(Generic[T]):
    """
    Exact k-NN cosine index over a fixed set of payloads.
    Vectors are L2-normalised so inner product equals cosine similarity.
    """

    def __init__(self, dim: int = 768):
        self.dim = dim
        self.index = faiss.IndexFlatIP(dim)
        self._payloads: List[T] = []

    def __len__(self) -> int:
        return self.index.ntotal

    def add(self, vector: Sequence[float], payload: T) -> int:
        vec = np.array([vector]).astype("float32")
        if vec.shape[1] != self.dim:
            raise ValueError(f"Vector has {vec.shape[1]} dimensions, index expects {self.dim}")
        faiss.normalize_L2(vec)
        idx = self.index.ntotal
        self.index.add(vec)
        self._payloads.append(payload)
        return idx

    def search(
        self,
        vector: Sequence[float],
        k: int = 5,
        min_similarity: float = -1.0,
    ) -> List[Tuple[T, float]]:
        """
        Up to k payloads with similarity >= min_similarity, most similar first.
        """
        if self.index.ntotal == 0 or k <= 0:
            return []

        vec = np.array([vector]).astype("float32")
        faiss.normalize_L2(vec)
        scores, indices = self.index.search(vec, min(k, self.index.ntotal))

        results = []
        for idx, score in zip(indices[0].tolist(), scores[0].tolist()):
            if idx == -1:
                continue
            similarity = max(-1.0, min(1.0, float(score)))
            if similarity >= min_similarity:
                results.append((self._payloads[idx], similarity))
        return results
