"""lda_cgs.models.stats
=====================

Sufficient statistics of collapsed Gibbs LDA.

    ========== =========================================
    field       shape / dtype        notes
    ========== =========================================
    ``z``       ``(N,)  int32``      topic per token, ``-1`` = unassigned
    ``n_wk``    ``(V,K) int32``      word–topic counts
    ``n_dk``    ``(D,K) int32``      doc–topic counts
    ``n_k``     ``(K,)  int32``      topic totals
    ========== =========================================

``z`` is the single source of truth: every count table can be rebuilt from it
(see :func:`check_invariants`).  The assignments of document ``d`` are the
contiguous slice ``z[doc_ptrs[d]:doc_ptrs[d+1]]``, indexed by token position.

:func:`increment` and :func:`decrement` are pure and traceable so they can run
inside ``jit``.  A decrement cannot raise from traced code, so it reports an
``underflow`` flag instead and the caller is responsible for discarding the
returned state and raising :class:`~lda_cgs.utils.errors.InvariantViolation`.
"""

from __future__ import annotations

from typing import NamedTuple, Tuple

import numpy as np
import jax.numpy as jnp
from jax import Array

from lda_cgs.utils.errors import InvariantViolation
from lda_cgs.utils.process import Corpus

__all__ = [
    "SufficientStats",
    "init_stats",
    "increment",
    "decrement",
    "checked_decrement",
    "get",
    "get_row",
    "get_col",
    "check_invariants",
]

UNASSIGNED = -1


class SufficientStats(NamedTuple):
    """Count tables plus the per-token assignment table."""

    z: Array      # (N,)   topic per token
    n_wk: Array   # (V,K)  word-topic counts
    n_dk: Array   # (D,K)  doc-topic counts
    n_k: Array    # (K,)   topic totals


def init_stats(num_topics: int, vocab_size: int, num_docs: int, num_tokens: int) -> SufficientStats:
    """Zeroed count tables and an empty assignment table."""
    return SufficientStats(
        z=jnp.full((num_tokens,), UNASSIGNED, dtype=jnp.int32),
        n_wk=jnp.zeros((vocab_size, num_topics), dtype=jnp.int32),
        n_dk=jnp.zeros((num_docs, num_topics), dtype=jnp.int32),
        n_k=jnp.zeros((num_topics,), dtype=jnp.int32),
    )

################################################################################
# Mutation #####################################################################
################################################################################

def increment(stats: SufficientStats, token, doc, word, topic, delta=1) -> SufficientStats:
    """Attach ``token`` to ``topic`` and add ``delta`` to the three counts it backs."""
    return SufficientStats(
        z    = stats.z.at[token].set(topic),
        n_wk = stats.n_wk.at[word, topic].add(delta),
        n_dk = stats.n_dk.at[doc, topic].add(delta),
        n_k  = stats.n_k.at[topic].add(delta),
    )


def decrement(stats: SufficientStats, token, doc, word, topic, delta=1) -> Tuple[SufficientStats, Array]:
    """Detach ``token`` from ``topic``.

    Returns the updated statistics and a boolean ``underflow`` flag which is set
    when the token was not assigned ``topic`` or any touched count is smaller
    than ``delta``.  A flagged decrement leaves every table and the token's
    assignment untouched, so counts never go negative.
    """
    underflow = (
        (stats.z[token] != topic)
        | (stats.n_wk[word, topic] < delta)
        | (stats.n_dk[doc, topic] < delta)
        | (stats.n_k[topic] < delta)
    )
    step = jnp.where(underflow, 0, delta)
    new = SufficientStats(
        z    = stats.z.at[token].set(jnp.where(underflow, stats.z[token], UNASSIGNED)),
        n_wk = stats.n_wk.at[word, topic].add(-step),
        n_dk = stats.n_dk.at[doc, topic].add(-step),
        n_k  = stats.n_k.at[topic].add(-step),
    )
    return new, underflow


def checked_decrement(stats: SufficientStats, token: int, doc: int, word: int, topic: int, delta: int = 1) -> SufficientStats:
    """Eager :func:`decrement` that raises instead of returning a flag."""
    new, underflow = decrement(stats, token, doc, word, topic, delta)
    if bool(underflow):
        raise InvariantViolation(
            "decrement would drive a count negative or detach an unassigned token",
            token=token, doc=doc, word=word, topic=topic, delta=delta,
        )
    return new

################################################################################
# Read accessors ###############################################################
################################################################################

def get(table: Array, index: int, topic: int) -> int:
    return int(table[index, topic])


def get_row(table: Array, index: int) -> Array:
    """All topic counts of one word (``n_wk``) or document (``n_dk``)."""
    return table[index]


def get_col(table: Array, topic: int) -> Array:
    """Counts of one topic across all words or documents."""
    return table[:, topic]

################################################################################
# Consistency check ############################################################
################################################################################

def check_invariants(stats: SufficientStats, corpus: Corpus, num_topics: int) -> None:
    """Recount everything from ``z`` and compare with the stored tables.

    Raises :class:`InvariantViolation` on the first mismatch.  This is a full
    O(N + (V + D) K) pass, so the sampler only calls it when asked to.
    """
    z = np.asarray(stats.z)
    n_wk = np.asarray(stats.n_wk)
    n_dk = np.asarray(stats.n_dk)
    n_k = np.asarray(stats.n_k)

    bad = np.flatnonzero((z < 0) | (z >= num_topics))
    if bad.size:
        token = int(bad[0])
        row = int(np.asarray(corpus.doc_ids)[token])
        raise InvariantViolation(
            "token has no valid topic assignment",
            token=token,
            doc=corpus.doc_keys[row],
            position=token - int(corpus.doc_ptrs[row]),
            topic=int(z[token]),
        )

    if (n_wk < 0).any() or (n_dk < 0).any() or (n_k < 0).any():
        raise InvariantViolation("negative count in sufficient statistics")

    if not np.array_equal(n_wk.sum(axis=0), n_k):
        raise InvariantViolation(
            "word-topic column sums differ from topic totals",
            column_sums=n_wk.sum(axis=0).tolist(), totals=n_k.tolist(),
        )
    if not np.array_equal(n_dk.sum(axis=0), n_k):
        raise InvariantViolation(
            "doc-topic column sums differ from topic totals",
            column_sums=n_dk.sum(axis=0).tolist(), totals=n_k.tolist(),
        )

    lengths = np.asarray(corpus.doc_lengths)
    row_sums = n_dk.sum(axis=1)
    mismatched = np.flatnonzero(row_sums != lengths)
    if mismatched.size:
        row = int(mismatched[0])
        raise InvariantViolation(
            "doc-topic row sum differs from document length",
            doc=corpus.doc_keys[row], row_sum=int(row_sums[row]), length=int(lengths[row]),
        )

    word_ids = np.asarray(corpus.word_ids)
    doc_ids = np.asarray(corpus.doc_ids)
    expected_wk = np.zeros_like(n_wk)
    np.add.at(expected_wk, (word_ids, z), 1)
    expected_dk = np.zeros_like(n_dk)
    np.add.at(expected_dk, (doc_ids, z), 1)
    if not np.array_equal(expected_wk, n_wk):
        word = int(np.argwhere(expected_wk != n_wk)[0][0])
        raise InvariantViolation("word-topic counts do not match assignments", word=word)
    if not np.array_equal(expected_dk, n_dk):
        row = int(np.argwhere(expected_dk != n_dk)[0][0])
        raise InvariantViolation("doc-topic counts do not match assignments", doc=corpus.doc_keys[row])
