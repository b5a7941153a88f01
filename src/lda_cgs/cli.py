"""Train an LDA topic model on a bag-of-words corpus file with collapsed Gibbs sampling."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

import numpy as np

from lda_cgs.inference.sampler import GibbsSampler, SamplerConfig
from lda_cgs.models.lda import LDAModel
from lda_cgs.utils.errors import ConfigError, FatalParseError
from lda_cgs.utils.process import load_corpus

logger = logging.getLogger("lda_cgs")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="lda-cgs",
        description="Fit an LDA model with collapsed Gibbs sampling.",
    )
    parser.add_argument(
        "corpus_path",
        type=Path,
        help="Corpus file, one '<docId> <wordId>:<count> ...' line per document.",
    )
    parser.add_argument("-k", "--topics", type=int, default=10, help="Number of topics.")
    parser.add_argument("-a", "--alpha", type=float, default=0.1, help="Document-topic Dirichlet prior.")
    parser.add_argument("-b", "--beta", type=float, default=0.01, help="Topic-word Dirichlet prior.")
    parser.add_argument("-i", "--iterations", type=int, default=100, help="Number of Gibbs sweeps.")
    parser.add_argument("-s", "--seed", type=int, default=0, help="Random seed for reproducibility.")
    parser.add_argument(
        "--log-every",
        type=int,
        default=10,
        help="Log the likelihood every N sweeps (0 disables).",
    )
    parser.add_argument(
        "--time-budget",
        type=float,
        default=None,
        help="Stop sampling after this many seconds, at a sweep boundary.",
    )
    parser.add_argument("--top-words", type=int, default=10, help="Word ids to print per topic.")
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=None,
        help="If given, write phi.npy, theta.npy and doc_keys.npy here.",
    )
    parser.add_argument("-q", "--quiet", action="store_true", help="Only log warnings; no progress bar.")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.WARNING if args.quiet else logging.INFO, format=LOG_FORMAT)

    try:
        corpus = load_corpus(args.corpus_path)
        model = LDAModel.for_corpus(corpus, args.topics, alpha=args.alpha, beta=args.beta)
        config = SamplerConfig(
            num_iters=args.iterations,
            seed=args.seed,
            log_every=args.log_every,
            time_budget=args.time_budget,
            show_progress=not args.quiet,
        )
        sampler = GibbsSampler(corpus, model, config)
    except (ConfigError, FatalParseError) as err:
        logger.error("%s", err)
        return 2

    sampler.run()
    logger.info("finished %d sweeps, likelihood %f", sampler.iteration, sampler.log_likelihood())

    for topic in range(model.num_topics):
        words = " ".join(str(w) for w in sampler.top_words(topic, args.top_words))
        print(f"topic {topic}: {words}")

    if args.output_dir is not None:
        args.output_dir.mkdir(parents=True, exist_ok=True)
        np.save(args.output_dir / "phi.npy", np.asarray(sampler.phi()))
        np.save(args.output_dir / "theta.npy", np.asarray(sampler.theta()))
        np.save(args.output_dir / "doc_keys.npy", np.asarray(corpus.doc_keys, dtype=np.int64))
        logger.info("wrote estimates to %s", args.output_dir)
    return 0


if __name__ == "__main__":
    sys.exit(main())
