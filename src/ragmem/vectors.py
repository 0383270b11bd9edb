"""Cosine-similarity lookup shared by the graph and document stores."""

from typing import List, Sequence, Tuple

from ragmem.backends.base import StoreBackend


def nearest(
    backend: StoreBackend,
    table: str,
    key_column: str,
    vector: Sequence[float],
    k: int,
) -> List[Tuple[str, float]]:
    """Top ``k`` rows of ``table`` by cosine similarity to ``vector``.

    Ordered by similarity descending, then key ascending. Rows without an
    embedding are never returned.
    """
    if k <= 0:
        return []
    rows = backend.fetchall(
        f"SELECT {key_column}, {backend.similarity_sql('embedding')} AS score "
        f"FROM {table} WHERE embedding IS NOT NULL "
        f"ORDER BY score DESC, {key_column} ASC LIMIT ?",
        (backend.vector_param(vector), k),
    )
    return [(r[0], float(r[1])) for r in rows]
