"""lda_cgs.utils.generator
========================

Synthetic data generation: draw corpora from the LDA generative model for
unit tests and benchmarking.  The returned distributions use the same
orientation as the sampler's estimates (φ is ``(V, K)``, θ is ``(D, K)``).
"""

from __future__ import annotations

from typing import Sequence, NamedTuple, Tuple, Union

import numpy as np
import jax
from jax import Array
import jax.numpy as jnp

from .process import Corpus

__all__ = [
    "LDASynthetic",
    "generate_lda_corpus",
]

################################################################################
# 1. Synthetic LDA generator ####################################################
################################################################################

class LDASynthetic(NamedTuple):
    """Return object for :func:`generate_lda_corpus`."""

    corpus: Corpus
    z:      Array  # (N,) topic assignment per token
    theta:  Array  # (D, K) document–topic dists
    phi:    Array  # (V, K) word–topic dists

# -----------------------------------------------------------------------------
# Utility: Dirichlet draw that returns (next_key, sample)
# -----------------------------------------------------------------------------

def _draw_dirichlet(key: Array, alpha: Array, shape: Tuple[int, ...]) -> Tuple[Array, Array]:
    key, sub = jax.random.split(key)
    return key, jax.random.dirichlet(sub, alpha, shape=shape)


def generate_lda_corpus(
    key: Array,
    *,
    num_docs: int,
    num_topics: int,
    vocab_size: int,
    doc_length: Union[int, Sequence[int]],
    alpha: float = 0.1,
    beta: float = 0.1,
) -> LDASynthetic:
    """Draw a corpus from the standard LDA generative model.

    Documents get the ids ``0 .. num_docs - 1``.  The corpus always reports
    ``vocab_size`` even when some words are never drawn.
    """

    # 1. φ_k ~ Dir_V(beta), stored transposed as (V, K)
    key, topics = _draw_dirichlet(key, jnp.full((vocab_size,), beta), (num_topics,))

    # 2. θ_d ~ Dir_K(alpha)
    key, theta = _draw_dirichlet(key, jnp.full((num_topics,), alpha), (num_docs,))

    # 3. Document lengths
    if isinstance(doc_length, int):
        doc_lengths = np.full((num_docs,), doc_length, dtype=np.int32)
    else:
        doc_lengths = np.asarray(doc_length, dtype=np.int32)
        if doc_lengths.shape != (num_docs,):
            raise ValueError(f"expected {num_docs} document lengths, got shape {doc_lengths.shape}")

    # 4. Sample individual documents ----------------------------------------
    def _sample_doc(rng: Array, d_idx: int):
        L_d       = int(doc_lengths[d_idx])
        rng, sub1 = jax.random.split(rng)
        z_dn      = jax.random.categorical(sub1, jnp.log(theta[d_idx]), shape=(L_d,))
        rng, sub2 = jax.random.split(rng)
        w_dn      = jax.random.categorical(sub2, jnp.log(topics[z_dn]), axis=-1)
        return rng, (z_dn, w_dn)

    keys = jax.random.split(key, num_docs)

    z_all, w_all, d_all = [], [], []
    for d in range(num_docs):
        _, (z_dn, w_dn) = _sample_doc(keys[d], d)
        z_all.append(z_dn)
        w_all.append(w_dn)
        d_all.append(jnp.full_like(z_dn, d))

    z        = jnp.concatenate(z_all).astype(jnp.int32)
    word_ids = jnp.concatenate(w_all).astype(jnp.int32)
    doc_ids  = jnp.concatenate(d_all).astype(jnp.int32)

    doc_ptrs = jnp.concatenate([
        jnp.array([0], dtype=jnp.int32),
        jnp.cumsum(jnp.asarray(doc_lengths), dtype=jnp.int32),
    ])

    corpus = Corpus(word_ids, doc_ids, doc_ptrs, tuple(range(num_docs)), vocab_size)
    return LDASynthetic(corpus, z, theta, topics.T)
