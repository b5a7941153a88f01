"""lda_cgs.models.lda
===================

Latent Dirichlet Allocation trained with collapsed Gibbs sampling, written as
pure JAX kernels over the count tables in :pymod:`lda_cgs.models.stats`.

----------------------------------------------------------------------
Key API
----------------------------------------------------------------------

* :class:`LDAModel` – fixed hyper-parameters ``K``, ``V``, ``alpha``, ``beta``.
* :meth:`LDAModel.init_state` – uniform random topic per token.
* :func:`collapsed_gibbs_step` – **one sweep** over all tokens (word-level).
* :func:`phi`, :func:`theta` – posterior point estimates.
* :func:`log_likelihood` – ``sum_tokens log sum_k phi[w,k] * theta[d,k]``.

The per-token conditional is

    p(z = k | rest)  ∝  (alpha + n_dk[d,k]) * (beta + n_wk[w,k]) / (n_k[k] + V * beta)

and a topic is drawn from it by inverting the cumulative sum, scanning topics
in ascending order.  Tokens are visited in the corpus' canonical order
(documents by ascending id, positions in index order), so a given PRNG key
always produces the same chain.
"""

from __future__ import annotations

import math
import numbers
from dataclasses import dataclass
from functools import partial
from typing import Tuple

import jax
import jax.numpy as jnp
import numpy as np
from jax import Array

from lda_cgs.models.stats import SufficientStats, decrement, increment, init_stats
from lda_cgs.utils.errors import ConfigError
from lda_cgs.utils.process import Corpus

__all__ = [
    "LDAModel",
    "topic_weights",
    "sample_from_cumsum",
    "collapsed_gibbs_step",
    "phi",
    "theta",
    "log_likelihood",
]

NO_FAULT = -1


def _is_count(value) -> bool:
    # numpy integers are Integral; bools are too but never a valid K or V
    return isinstance(value, numbers.Integral) and not isinstance(value, bool)


################################################################################
# Hyper-parameters #############################################################
################################################################################

@dataclass(frozen=True)
class LDAModel:
    """Fixed hyper-parameters of the LDA generative model."""

    num_topics: int     # K
    vocab_size: int     # V
    alpha: float = 0.1  # symmetric Dir_K(alpha)
    beta: float = 0.1   # symmetric Dir_V(beta)

    def __post_init__(self):
        if not _is_count(self.num_topics) or self.num_topics <= 0:
            raise ConfigError(f"num_topics must be a positive integer, got {self.num_topics!r}")
        if not _is_count(self.vocab_size) or self.vocab_size <= 0:
            raise ConfigError(f"vocab_size must be a positive integer, got {self.vocab_size!r}")
        for name in ("alpha", "beta"):
            value = getattr(self, name)
            if not (isinstance(value, numbers.Real) and not isinstance(value, bool)
                    and math.isfinite(value) and value > 0):
                raise ConfigError(f"{name} must be a finite positive number, got {value!r}")

    @classmethod
    def for_corpus(cls, corpus: Corpus, num_topics: int, alpha: float = 0.1, beta: float = 0.1) -> "LDAModel":
        return cls(num_topics=num_topics, vocab_size=corpus.vocab_size, alpha=alpha, beta=beta)

    def validate_corpus(self, corpus: Corpus) -> None:
        """Reject corpora this model cannot be trained on."""
        if corpus.num_docs == 0:
            raise ConfigError("corpus has no documents")
        if corpus.num_tokens == 0:
            raise ConfigError("corpus has no tokens")
        max_word = int(corpus.word_ids.max())
        if max_word >= self.vocab_size:
            raise ConfigError(f"word id {max_word} is outside the vocabulary of size {self.vocab_size}")

    def init_state(self, corpus: Corpus, *, key: Array) -> SufficientStats:
        """Randomly assign each token to a topic and build count tables.

        Topics are drawn uniformly from ``[0, K)`` in canonical token order.
        """
        K = self.num_topics
        stats = init_stats(K, self.vocab_size, corpus.num_docs, corpus.num_tokens)

        z = jax.random.randint(key, shape=(corpus.num_tokens,), minval=0, maxval=K, dtype=jnp.int32)

        # Increment counts using vectorised scatter-adds ----------------------
        tokens = jnp.arange(corpus.num_tokens)
        return increment(stats, tokens, corpus.doc_ids, corpus.word_ids, z)

################################################################################
# Collapsed Gibbs kernel ########################################################
################################################################################

def topic_weights(stats: SufficientStats, word_id, doc_id, model: LDAModel) -> Array:
    """Unnormalised P(topic | rest) for a *single* detached token, shape (K,)."""
    V = model.vocab_size
    alpha, beta = model.alpha, model.beta

    doc_part  = alpha + stats.n_dk[doc_id]                                # (K,)
    word_part = (beta + stats.n_wk[word_id]) / (stats.n_k + V * beta)     # (K,)
    return doc_part * word_part


def sample_from_cumsum(weights: Array, key: Array) -> Array:
    """Draw a topic index with probability proportional to ``weights``.

    ``u ~ U[0, sum(weights))`` and the result is the smallest ``k`` with
    ``u < cumsum[k]``.
    """
    cumsum = jnp.cumsum(weights)
    u = jax.random.uniform(key, dtype=cumsum.dtype) * cumsum[-1]
    k = jnp.searchsorted(cumsum, u, side="right")
    # float rounding can push u onto the total
    return jnp.minimum(k, weights.shape[0] - 1).astype(jnp.int32)


@partial(jax.jit, static_argnames=("model",))
def _sweep(state: SufficientStats, word_ids: Array, doc_ids: Array, model: LDAModel, key: Array):
    K = model.num_topics

    def _update_token(carry, idx):
        st, k, fault = carry
        k_old = st.z[idx]
        d     = doc_ids[idx]
        w     = word_ids[idx]

        missing = (k_old < 0) | (k_old >= K)
        k_old   = jnp.clip(k_old, 0, K - 1)

        # Remove token -------------------------------------------------------
        st, underflow = decrement(st, idx, d, w, k_old)

        # Sample new topic ---------------------------------------------------
        weights    = topic_weights(st, w, d, model)
        k, subkey  = jax.random.split(k)
        k_new      = sample_from_cumsum(weights, subkey)

        # Add token back -----------------------------------------------------
        st = increment(st, idx, d, w, k_new)

        fault = jnp.where((fault == NO_FAULT) & (missing | underflow), idx, fault)
        return (st, k, fault), None

    init = (state, key, jnp.asarray(NO_FAULT, dtype=jnp.int32))
    (state, _, fault), _ = jax.lax.scan(_update_token, init, jnp.arange(word_ids.shape[0], dtype=jnp.int32))
    return state, fault


def collapsed_gibbs_step(
    state: SufficientStats, corpus: Corpus, model: LDAModel, *, key: Array
) -> Tuple[SufficientStats, Array]:
    """One full sweep over **all tokens** (word-level Gibbs).

    Returns the new state and the index of the first token whose removal hit
    an inconsistent state (missing assignment or a zero count), or ``-1``.
    When the fault is not ``-1`` the returned state is corrupt and must be
    discarded.
    """
    return _sweep(state, corpus.word_ids, corpus.doc_ids, model, key)

################################################################################
# Posterior estimates ##########################################################
################################################################################

def phi(state: SufficientStats, model: LDAModel) -> Array:
    """Word-topic distribution, shape (V, K); every column sums to one."""
    V, beta = model.vocab_size, model.beta
    n_k = state.n_wk.sum(axis=0, keepdims=True)            # (1, K)
    return (state.n_wk + beta) / (n_k + V * beta)


def theta(state: SufficientStats, model: LDAModel) -> Array:
    """Document-topic distribution, shape (D, K); every row sums to one."""
    K, alpha = model.num_topics, model.alpha
    n_d = state.n_dk.sum(axis=1, keepdims=True)            # (D, 1)
    return (state.n_dk + alpha) / (n_d + K * alpha)


@partial(jax.jit, static_argnames=("model",))
def _token_probs(state: SufficientStats, word_ids: Array, doc_ids: Array, model: LDAModel) -> Array:
    phi_, theta_ = phi(state, model), theta(state, model)
    return jnp.einsum("nk,nk->n", phi_[word_ids], theta_[doc_ids])


def log_likelihood(state: SufficientStats, corpus: Corpus, model: LDAModel) -> float:
    """Joint log-likelihood of the corpus under the current point estimates.

    Monitoring signal only; nothing in the sampler depends on it.  The
    per-token logs are accumulated in float64 on the host.
    """
    token_probs = np.asarray(_token_probs(state, corpus.word_ids, corpus.doc_ids, model), dtype=np.float64)
    return float(np.log(token_probs).sum())
