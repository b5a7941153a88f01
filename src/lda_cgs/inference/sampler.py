"""lda_cgs.inference.sampler
==========================

High-level driver that **orchestrates MCMC** for the collapsed Gibbs kernel in
:pymod:`lda_cgs.models.lda`.  The idea is:

* Keep the model-specific kernel (one sweep over all tokens) inside the model
  module itself.
* Own the chain here: the single PRNG key, the sufficient statistics, the
  lifecycle, burn-in, thinning, progress bars, periodic likelihood logging and
  early termination.

Each :class:`GibbsSampler` owns its statistics, so several independent chains
can live in one process.  Lifecycle::

    UNINITIALIZED --initialize()--> INITIALIZED --run()--> SAMPLING --> STOPPED

``run()`` on a ``STOPPED`` sampler resumes the chain from its current state.
"""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Protocol, Tuple

import numpy as np
import jax
from jax import Array
from tqdm import tqdm
import jax.numpy as jnp

from lda_cgs.models import stats as sstats
from lda_cgs.models.lda import LDAModel, NO_FAULT, collapsed_gibbs_step, log_likelihood, phi, theta
from lda_cgs.models.stats import SufficientStats
from lda_cgs.utils.errors import ConfigError, InvariantViolation
from lda_cgs.utils.process import Corpus

__all__ = [
    "SamplerConfig",
    "SamplerStatus",
    "GibbsSampler",
]

logger = logging.getLogger(__name__)

################################################################################
# Config dataclass #############################################################
################################################################################

@dataclass(slots=True)
class SamplerConfig:
    """Hyper-parameters controlling an MCMC run."""

    num_iters: int                   # sweeps performed by run() (including burn-in)
    burn_in: int = 0                 # number of initial sweeps not recorded in the trace
    thin: int = 1                    # record every `thin`-th sweep
    seed: int = 0                    # used when rng_key is not given
    rng_key: Array | None = None     # explicit PRNG key, overrides seed
    log_every: int = 10              # likelihood logging period in sweeps, 0 = never
    show_progress: bool = True       # tqdm progress bar
    check_invariants: bool = False   # full recount after every sweep (slow)
    should_stop: Optional[Callable[[int], bool]] = None  # polled between sweeps
    time_budget: Optional[float] = None                  # seconds per run() call

    def __post_init__(self):
        if self.num_iters < 0:
            raise ConfigError(f"`num_iters` must be non-negative, got {self.num_iters}.")
        if self.burn_in < 0:
            raise ConfigError(f"`burn_in` must be non-negative, got {self.burn_in}.")
        if self.thin < 1:
            raise ConfigError(f"`thin` must be at least 1, got {self.thin}.")
        if self.log_every < 0:
            raise ConfigError(f"`log_every` must be non-negative, got {self.log_every}.")
        if self.time_budget is not None and self.time_budget <= 0:
            raise ConfigError(f"`time_budget` must be positive, got {self.time_budget}.")

    def make_key(self) -> Array:
        return self.rng_key if self.rng_key is not None else jax.random.PRNGKey(self.seed)


class SamplerStatus(enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    SAMPLING = "sampling"
    STOPPED = "stopped"

################################################################################
# Protocol for kernels #########################################################
################################################################################

class GibbsKernelFn(Protocol):
    """Signature a sweep kernel must satisfy: new state plus fault token index."""

    def __call__(
        self, state: SufficientStats, corpus: Corpus, model: LDAModel, *, key: Array
    ) -> Tuple[SufficientStats, Array]: ...

################################################################################
# Sampler driver ###############################################################
################################################################################

@dataclass
class GibbsSampler:
    """Runs a collapsed Gibbs chain over one corpus.

    Parameters
    ----------
    corpus
        Bag-of-words corpus in canonical token order.
    model
        `LDAModel` instance holding hyper-parameters.
    config
        Run-time configuration (iterations, burn-in, seed, diagnostics).
    kernel
        A callable implementing the Gibbs sweep.  Defaults to
        `lda_cgs.models.lda.collapsed_gibbs_step`.
    store_state
        *If provided*, a function ``fn(state) -> dict`` that extracts the
        quantities kept from each post-burn-in draw.  By default the
        **n_wk** and **n_dk** count matrices are kept, which are sufficient
        for computing averaged φ/θ estimates.
    """

    corpus: Corpus
    model: LDAModel
    config: SamplerConfig
    kernel: GibbsKernelFn = collapsed_gibbs_step
    # Function that extracts what we store from each draw
    store_state: Optional[Callable[[SufficientStats], Dict[str, Array]]] = None

    # State managed internally
    status: SamplerStatus = field(init=False, default=SamplerStatus.UNINITIALIZED)
    iteration: int = field(init=False, default=0)
    likelihoods: List[Tuple[int, float]] = field(init=False, default_factory=list)
    _rng_key: Array = field(init=False, repr=False, default=None)
    _state: SufficientStats = field(init=False, repr=False, default=None)
    _trace: List = field(init=False, repr=False, default_factory=list)

    def __post_init__(self):
        if self.corpus.vocab_size > self.model.vocab_size:
            raise ConfigError(
                f"corpus vocabulary ({self.corpus.vocab_size}) is larger than the model's ({self.model.vocab_size})"
            )
        self.model.validate_corpus(self.corpus)
        if self.store_state is None:
            self.store_state = lambda s: {
                "n_wk": s.n_wk,
                "n_dk": s.n_dk,
            }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """Seed the chain and draw the random initial assignment."""
        if self.status is not SamplerStatus.UNINITIALIZED:
            raise RuntimeError(f"sampler already initialised (status: {self.status.value})")
        key = self.config.make_key()
        self._rng_key, sub = jax.random.split(key)
        self._state = self.model.init_state(self.corpus, key=sub)
        if self.config.check_invariants:
            sstats.check_invariants(self._state, self.corpus, self.model.num_topics)
        self.status = SamplerStatus.INITIALIZED
        logger.info(
            "initialised %d tokens in %d documents over %d topics",
            self.corpus.num_tokens, self.corpus.num_docs, self.model.num_topics,
        )

    def run(self, num_iters: Optional[int] = None) -> None:
        """Perform ``num_iters`` sweeps (default ``config.num_iters``).

        Initialises first if needed.  Stops early, between two sweeps, when
        ``config.should_stop`` returns true or ``config.time_budget`` runs out.
        """
        num_iters = self.config.num_iters if num_iters is None else num_iters
        if num_iters < 0:
            raise ConfigError(f"`num_iters` must be non-negative, got {num_iters}.")
        if self.status is SamplerStatus.UNINITIALIZED:
            self.initialize()

        self.status = SamplerStatus.SAMPLING
        deadline = None
        if self.config.time_budget is not None:
            deadline = time.monotonic() + self.config.time_budget

        iterator = range(num_iters)
        if self.config.show_progress:
            iterator = tqdm(iterator, desc="Gibbs")

        try:
            for _ in iterator:
                if self._should_stop(deadline):
                    break
                self._sweep()
        finally:
            self.status = SamplerStatus.STOPPED

    def _should_stop(self, deadline: Optional[float]) -> bool:
        if self.config.should_stop is not None and self.config.should_stop(self.iteration):
            logger.info("stop requested after %d sweeps", self.iteration)
            return True
        if deadline is not None and time.monotonic() >= deadline:
            logger.info("time budget exhausted after %d sweeps", self.iteration)
            return True
        return False

    def _sweep(self) -> None:
        it = self.iteration
        if self.config.log_every and it % self.config.log_every == 0:
            ll = self.log_likelihood()
            self.likelihoods.append((it, ll))
            logger.info("iter %5d, likelihood %f", it, ll)

        self._rng_key, sub = jax.random.split(self._rng_key)
        state, fault = self.kernel(self._state, self.corpus, self.model, key=sub)
        fault = int(fault)
        if fault != NO_FAULT:
            raise InvariantViolation("count underflow or missing assignment during sweep",
                                     iteration=it, **self._token_context(fault))
        if self.config.check_invariants:
            sstats.check_invariants(state, self.corpus, self.model.num_topics)

        self._state = state
        self.iteration = it + 1

        if it >= self.config.burn_in and (it - self.config.burn_in) % self.config.thin == 0:
            self._trace.append(self.store_state(self._state))

    def _token_context(self, token: int) -> dict:
        row = int(np.searchsorted(np.asarray(self.corpus.doc_ptrs), token, side="right")) - 1
        z = int(self._state.z[token])
        return {
            "token": token,
            "doc": self.corpus.doc_keys[row],
            "position": token - int(self.corpus.doc_ptrs[row]),
            "word": int(self.corpus.word_ids[token]),
            "topic": z,
        }

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def state(self) -> SufficientStats:
        if self._state is None:
            raise ValueError("Sampler is not initialised; call initialize() or run() first.")
        return self._state

    @property
    def trace(self) -> List[Dict[str, Array]]:
        return list(self._trace)

    def phi(self) -> Array:
        """Current φ estimate, shape (V, K)."""
        return phi(self.state, self.model)

    def theta(self) -> Array:
        """Current θ estimate, shape (D, K)."""
        return theta(self.state, self.model)

    def log_likelihood(self) -> float:
        return log_likelihood(self.state, self.corpus, self.model)

    def assignments(self, row: int) -> Array:
        """Topic of every token of document ``row``, indexed by position."""
        ptrs = self.corpus.doc_ptrs
        return self.state.z[int(ptrs[row]):int(ptrs[row + 1])]

    def top_words(self, topic: int, n: int = 10) -> List[int]:
        """Word ids with the highest φ under ``topic``, most probable first."""
        col = np.asarray(sstats.get_col(self.phi(), topic))
        # stable sort keeps lower ids first among ties
        return [int(w) for w in np.argsort(-col, kind="stable")[:n]]

    # ------------------------------------------------------------------
    # Convenience helpers
    # ------------------------------------------------------------------

    def posterior_phi(self) -> Array:
        """Posterior mean of φ (word‑topic distribution) over the trace."""
        if not self._trace:
            raise ValueError("Sampler trace is empty; run() first.")

        V, beta = self.model.vocab_size, self.model.beta
        n_wk_stack = jnp.stack([d["n_wk"] for d in self._trace])  # (T, V, K)
        n_k_stack = n_wk_stack.sum(axis=1, keepdims=True)  # (T, 1, K)
        phi_stack = (n_wk_stack + beta) / (n_k_stack + V * beta)  # (T, V, K)
        return phi_stack.mean(axis=0)  # (V, K)

    def posterior_theta(self) -> Array:
        """Posterior mean of θ (doc‑topic distribution) over the trace."""
        if not self._trace:
            raise ValueError("Sampler trace is empty; run() first.")

        K, alpha = self.model.num_topics, self.model.alpha
        n_dk_stack = jnp.stack([d["n_dk"] for d in self._trace])  # (T, D, K)
        n_d_stack = n_dk_stack.sum(axis=2, keepdims=True)  # (T, D, 1)
        theta_stack = (n_dk_stack + alpha) / (n_d_stack + K * alpha)  # (T, D, K)
        return theta_stack.mean(axis=0)  # (D, K)
