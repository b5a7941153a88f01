"""Sampler driver and kernel: invariants, estimators, reproducibility, lifecycle."""

from __future__ import annotations

import math

import numpy as np
import pytest
import jax
import jax.numpy as jnp

from lda_cgs.inference.sampler import GibbsSampler, SamplerConfig, SamplerStatus
from lda_cgs.models import stats as sstats
from lda_cgs.models.lda import LDAModel, sample_from_cumsum, topic_weights
from lda_cgs.utils.errors import ConfigError, InvariantViolation
from lda_cgs.utils.process import corpus_from_word_counts


def _quiet(**kwargs) -> SamplerConfig:
    kwargs.setdefault("num_iters", 5)
    kwargs.setdefault("show_progress", False)
    kwargs.setdefault("log_every", 0)
    return SamplerConfig(**kwargs)


@pytest.fixture
def small_corpus():
    return corpus_from_word_counts({
        3: [(0, 2), (1, 1), (4, 3)],
        1: [(2, 4), (3, 1)],
        7: [(0, 1), (4, 2), (5, 2)],
        5: [(5, 3), (1, 2)],
    })

################################################################################
# Count invariants ##############################################################
################################################################################

def test_invariants_hold_after_init_and_every_sweep(small_corpus):
    model = LDAModel.for_corpus(small_corpus, num_topics=3, alpha=0.5, beta=0.1)
    sampler = GibbsSampler(small_corpus, model, _quiet(num_iters=10, check_invariants=True))
    sampler.initialize()
    assert sampler.status is SamplerStatus.INITIALIZED

    lengths = np.asarray(small_corpus.doc_lengths)
    for _ in range(10):
        sampler.run(1)
        st = sampler.state
        n_k = np.asarray(st.n_k)
        np.testing.assert_array_equal(np.asarray(st.n_wk).sum(axis=0), n_k)
        np.testing.assert_array_equal(np.asarray(st.n_dk).sum(axis=0), n_k)
        np.testing.assert_array_equal(np.asarray(st.n_dk).sum(axis=1), lengths)
        z = np.asarray(st.z)
        assert z.min() >= 0 and z.max() < 3
    assert sampler.iteration == 10


def test_phi_columns_and_theta_rows_sum_to_one(small_corpus):
    model = LDAModel.for_corpus(small_corpus, num_topics=4, alpha=0.3, beta=0.05)
    sampler = GibbsSampler(small_corpus, model, _quiet(num_iters=8, seed=11))
    sampler.run()

    phi = np.asarray(sampler.phi())
    theta = np.asarray(sampler.theta())
    assert phi.shape == (small_corpus.vocab_size, 4)
    assert theta.shape == (small_corpus.num_docs, 4)
    np.testing.assert_allclose(phi.sum(axis=0), 1.0, atol=1e-5)
    np.testing.assert_allclose(theta.sum(axis=1), 1.0, atol=1e-5)


def test_single_topic_single_word_is_degenerate():
    corpus = corpus_from_word_counts({0: [(0, 9)]})
    model = LDAModel.for_corpus(corpus, num_topics=1, alpha=0.1, beta=0.1)
    sampler = GibbsSampler(corpus, model, _quiet(num_iters=3))
    sampler.run()

    np.testing.assert_array_equal(np.asarray(sampler.phi()), [[1.0]])
    np.testing.assert_array_equal(np.asarray(sampler.theta()), [[1.0]])
    np.testing.assert_array_equal(np.asarray(sampler.assignments(0)), [0] * 9)


def test_assignment_table_and_likelihood_on_tiny_corpus():
    corpus = corpus_from_word_counts({0: [(0, 2), (1, 1)], 1: [(2, 3), (1, 1)]}, vocab_size=3)
    model = LDAModel.for_corpus(corpus, num_topics=2)
    sampler = GibbsSampler(corpus, model, _quiet(num_iters=0, seed=4))
    sampler.initialize()

    assert sampler.state.z.shape == (7,)
    assert sum(sampler.assignments(d).shape[0] for d in range(corpus.num_docs)) == 7
    ll = sampler.log_likelihood()
    assert math.isfinite(ll)
    assert ll < 0


def test_log_likelihood_matches_float64_recomputation(small_corpus):
    model = LDAModel.for_corpus(small_corpus, num_topics=3, alpha=0.5, beta=0.1)
    sampler = GibbsSampler(small_corpus, model, _quiet(num_iters=3, seed=2))
    sampler.run()

    phi = np.asarray(sampler.phi(), dtype=np.float64)
    theta = np.asarray(sampler.theta(), dtype=np.float64)
    w = np.asarray(small_corpus.word_ids)
    d = np.asarray(small_corpus.doc_ids)
    expected = np.log((phi[w] * theta[d]).sum(axis=1)).sum()

    ll = sampler.log_likelihood()
    assert isinstance(ll, float)
    assert ll == pytest.approx(expected, rel=1e-5)


def test_init_state_draws_topics_in_range(small_corpus):
    model = LDAModel.for_corpus(small_corpus, num_topics=3)
    state = model.init_state(small_corpus, key=jax.random.PRNGKey(11))
    z = np.asarray(state.z)
    assert z.shape == (small_corpus.num_tokens,)
    assert z.min() >= 0 and z.max() < 3
    assert int(state.n_k.sum()) == small_corpus.num_tokens

################################################################################
# Reproducibility ###############################################################
################################################################################

def test_same_seed_gives_identical_chains(small_corpus):
    model = LDAModel.for_corpus(small_corpus, num_topics=3)
    runs = []
    for _ in range(2):
        sampler = GibbsSampler(small_corpus, model, _quiet(num_iters=6, seed=123))
        sampler.initialize()
        zs = [np.asarray(sampler.state.z)]
        for _ in range(6):
            sampler.run(1)
            zs.append(np.asarray(sampler.state.z))
        runs.append((zs, np.asarray(sampler.phi()), np.asarray(sampler.theta())))

    (zs_a, phi_a, theta_a), (zs_b, phi_b, theta_b) = runs
    for a, b in zip(zs_a, zs_b):
        np.testing.assert_array_equal(a, b)
    np.testing.assert_array_equal(phi_a, phi_b)
    np.testing.assert_array_equal(theta_a, theta_b)


def test_explicit_rng_key_matches_seed(small_corpus):
    model = LDAModel.for_corpus(small_corpus, num_topics=3)
    a = GibbsSampler(small_corpus, model, _quiet(seed=9))
    b = GibbsSampler(small_corpus, model, _quiet(rng_key=jax.random.PRNGKey(9)))
    a.run()
    b.run()
    np.testing.assert_array_equal(np.asarray(a.state.z), np.asarray(b.state.z))


def test_resumed_chain_matches_uninterrupted_chain(small_corpus):
    model = LDAModel.for_corpus(small_corpus, num_topics=3)
    split = GibbsSampler(small_corpus, model, _quiet(seed=2))
    split.run(3)
    assert split.status is SamplerStatus.STOPPED
    split.run(2)

    whole = GibbsSampler(small_corpus, model, _quiet(seed=2))
    whole.run(5)

    assert split.iteration == whole.iteration == 5
    np.testing.assert_array_equal(np.asarray(split.state.z), np.asarray(whole.state.z))

################################################################################
# Lifecycle, stopping, trace ####################################################
################################################################################

def test_queries_before_initialisation_fail(small_corpus):
    model = LDAModel.for_corpus(small_corpus, num_topics=2)
    sampler = GibbsSampler(small_corpus, model, _quiet())
    assert sampler.status is SamplerStatus.UNINITIALIZED
    with pytest.raises(ValueError):
        sampler.phi()
    with pytest.raises(ValueError):
        sampler.log_likelihood()


def test_initialize_twice_is_an_error(small_corpus):
    model = LDAModel.for_corpus(small_corpus, num_topics=2)
    sampler = GibbsSampler(small_corpus, model, _quiet())
    sampler.initialize()
    with pytest.raises(RuntimeError):
        sampler.initialize()


def test_stop_callback_ends_run_between_sweeps(small_corpus):
    stop = {"at": 3}
    model = LDAModel.for_corpus(small_corpus, num_topics=3)
    config = _quiet(num_iters=10, should_stop=lambda it: stop["at"] is not None and it >= stop["at"])
    sampler = GibbsSampler(small_corpus, model, config)
    sampler.run()

    assert sampler.iteration == 3
    assert sampler.status is SamplerStatus.STOPPED
    sstats.check_invariants(sampler.state, small_corpus, 3)

    stop["at"] = None
    sampler.run(4)
    assert sampler.iteration == 7


def test_likelihood_is_logged_periodically(small_corpus, caplog):
    model = LDAModel.for_corpus(small_corpus, num_topics=2)
    sampler = GibbsSampler(small_corpus, model, _quiet(num_iters=12, log_every=5))
    with caplog.at_level("INFO", logger="lda_cgs.inference.sampler"):
        sampler.run()
    assert [it for it, _ in sampler.likelihoods] == [0, 5, 10]
    assert sum("likelihood" in r.getMessage() for r in caplog.records) == 3


def test_trace_respects_burn_in_and_thinning(small_corpus):
    model = LDAModel.for_corpus(small_corpus, num_topics=3)
    sampler = GibbsSampler(small_corpus, model, _quiet(num_iters=10, burn_in=4, thin=3))
    sampler.run()

    assert len(sampler.trace) == 2     # sweeps 4 and 7
    np.testing.assert_allclose(np.asarray(sampler.posterior_phi()).sum(axis=0), 1.0, atol=1e-5)
    np.testing.assert_allclose(np.asarray(sampler.posterior_theta()).sum(axis=1), 1.0, atol=1e-5)


def test_posterior_needs_a_trace(small_corpus):
    model = LDAModel.for_corpus(small_corpus, num_topics=3)
    sampler = GibbsSampler(small_corpus, model, _quiet(num_iters=3, burn_in=5))
    sampler.run()
    with pytest.raises(ValueError):
        sampler.posterior_phi()


def test_top_words_are_ranked_by_phi(small_corpus):
    model = LDAModel.for_corpus(small_corpus, num_topics=2)
    sampler = GibbsSampler(small_corpus, model, _quiet())
    sampler.run()
    words = sampler.top_words(0, n=3)
    col = np.asarray(sampler.phi())[:, 0]
    assert len(words) == 3
    assert col[words[0]] >= col[words[1]] >= col[words[2]]
    assert col[words[0]] == col.max()

################################################################################
# Failure modes #################################################################
################################################################################

def test_sweep_on_corrupted_counts_raises(small_corpus):
    model = LDAModel.for_corpus(small_corpus, num_topics=2)
    sampler = GibbsSampler(small_corpus, model, _quiet())
    sampler.initialize()
    corrupted = sampler.state._replace(n_dk=jnp.zeros_like(sampler.state.n_dk))
    sampler._state = corrupted

    with pytest.raises(InvariantViolation) as exc_info:
        sampler.run(1)
    assert exc_info.value.context["token"] == 0
    assert exc_info.value.context["iteration"] == 0
    # the faulty sweep is never committed
    assert sampler.state is corrupted
    assert sampler.iteration == 0


def test_missing_assignment_raises_with_context(small_corpus):
    model = LDAModel.for_corpus(small_corpus, num_topics=2)
    sampler = GibbsSampler(small_corpus, model, _quiet())
    sampler.initialize()
    sampler._state = sampler.state._replace(z=sampler.state.z.at[6].set(-1))

    with pytest.raises(InvariantViolation) as exc_info:
        sampler.run(1)
    ctx = exc_info.value.context
    # token 6 is the second token of document 3 (document 1 holds tokens 0-4)
    assert ctx["token"] == 6
    assert ctx["doc"] == 3
    assert ctx["position"] == 1
    assert ctx["topic"] == -1


@pytest.mark.parametrize("kwargs", [
    dict(num_topics=0, vocab_size=3),
    dict(num_topics=2, vocab_size=0),
    dict(num_topics=2, vocab_size=3, alpha=0.0),
    dict(num_topics=2, vocab_size=3, beta=-1.0),
    dict(num_topics=2, vocab_size=3, alpha=float("nan")),
    dict(num_topics=True, vocab_size=3),
    dict(num_topics=2, vocab_size=3.0),
    dict(num_topics=2, vocab_size=3, beta=True),
])
def test_bad_hyperparameters_are_rejected(kwargs):
    with pytest.raises(ConfigError):
        LDAModel(**kwargs)


def test_numpy_scalars_are_accepted_as_dimensions():
    model = LDAModel(num_topics=np.int64(3), vocab_size=np.int32(4), alpha=np.float32(0.5))
    assert model.num_topics == 3
    assert model.vocab_size == 4


def test_empty_corpus_is_rejected():
    model = LDAModel(num_topics=2, vocab_size=3)
    with pytest.raises(ConfigError):
        GibbsSampler(corpus_from_word_counts({}, vocab_size=3), model, _quiet())
    with pytest.raises(ConfigError):
        GibbsSampler(corpus_from_word_counts({0: [], 1: [(2, 0)]}, vocab_size=3), model, _quiet())


def test_corpus_larger_than_model_vocabulary_is_rejected(small_corpus):
    model = LDAModel(num_topics=2, vocab_size=3)
    with pytest.raises(ConfigError):
        GibbsSampler(small_corpus, model, _quiet())


@pytest.mark.parametrize("kwargs", [
    dict(num_iters=-1),
    dict(num_iters=5, thin=0),
    dict(num_iters=5, burn_in=-2),
    dict(num_iters=5, time_budget=0.0),
])
def test_bad_sampler_config_is_rejected(kwargs):
    with pytest.raises(ConfigError):
        SamplerConfig(**kwargs)

################################################################################
# Kernel pieces #################################################################
################################################################################

def test_sample_from_cumsum_picks_first_crossing_index():
    keys = jax.random.split(jax.random.PRNGKey(0), 50)
    only_last = jnp.array([0.0, 0.0, 2.5])
    only_first = jnp.array([1.0, 0.0, 0.0])
    assert all(int(sample_from_cumsum(only_last, k)) == 2 for k in keys)
    assert all(int(sample_from_cumsum(only_first, k)) == 0 for k in keys)


def test_sample_from_cumsum_follows_weights():
    weights = jnp.array([1.0, 3.0])
    draws = jax.vmap(lambda k: sample_from_cumsum(weights, k))(jax.random.split(jax.random.PRNGKey(1), 4000))
    frac = float(np.asarray(draws).mean())
    assert abs(frac - 0.75) < 0.05


def test_topic_weights_formula():
    st = sstats.init_stats(num_topics=2, vocab_size=3, num_docs=1, num_tokens=3)
    st = sstats.increment(st, 0, 0, 1, 0)
    st = sstats.increment(st, 1, 0, 1, 0)
    st = sstats.increment(st, 2, 0, 2, 1)
    model = LDAModel(num_topics=2, vocab_size=3, alpha=0.5, beta=0.25)

    w = np.asarray(topic_weights(st, 1, 0, model))
    expected = [
        (0.5 + 2) * (0.25 + 2) / (2 + 3 * 0.25),
        (0.5 + 1) * (0.25 + 0) / (1 + 3 * 0.25),
    ]
    np.testing.assert_allclose(w, expected, rtol=1e-5)
