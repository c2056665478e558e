"""Vector similarity and Maximal Marginal Relevance selection.

MMR balances relevance to the query against redundancy with results already
picked:

    score = lambda * sim(candidate, query) - (1 - lambda) * max(sim(candidate, selected))

It runs over a small pre-filtered pool (the nearest neighbours returned by the
document store), so the O(k * n) comparisons per call stay cheap.
"""

from typing import List, Optional, Sequence

import numpy as np

from memo_chat.models.chunk import Candidate, Context


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between ``a`` and ``b``.

    Returns 0.0 when the lengths differ or either vector has zero norm.
    """
    if len(a) != len(b) or len(a) == 0:
        return 0.0
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    norm_a = np.linalg.norm(va)
    norm_b = np.linalg.norm(vb)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(va, vb) / (norm_a * norm_b))


def select_by_mmr(
    candidates: List[Candidate],
    query_vector: Sequence[float],
    k: int,
    lambda_: float = 0.5,
    max_chars: Optional[int] = None,
) -> List[Context]:
    """Pick up to ``k`` diverse, relevant candidates.

    Pools of ``k`` or fewer are returned whole, in their original order. Ties go
    to the candidate seen first. Embeddings are stripped from the output.
    """
    if k <= 0:
        return []
    if len(candidates) <= k:
        return [c.to_context(max_chars) for c in candidates]

    relevance = [cosine_similarity(c.embedding, query_vector) for c in candidates]

    # Seed with the single most relevant candidate (first wins ties)
    seed = max(range(len(candidates)), key=lambda i: (relevance[i], -i))
    selected = [seed]
    remaining = [i for i in range(len(candidates)) if i != seed]

    # Similarity of every remaining candidate to its closest selected one
    max_sim = {
        i: cosine_similarity(candidates[i].embedding, candidates[seed].embedding)
        for i in remaining
    }

    while len(selected) < k and remaining:
        best_idx = None
        best_score = float("-inf")
        for i in remaining:
            score = lambda_ * relevance[i] - (1 - lambda_) * max_sim[i]
            if score > best_score:
                best_score = score
                best_idx = i

        selected.append(best_idx)
        remaining.remove(best_idx)
        for i in remaining:
            sim = cosine_similarity(candidates[i].embedding, candidates[best_idx].embedding)
            if sim > max_sim[i]:
                max_sim[i] = sim

    return [candidates[i].to_context(max_chars) for i in selected]
