"""lda_cgs.utils.process
======================

Corpus container plus the helpers that build one.

1. **Corpus container** – the flat ``(word_ids, doc_ids, doc_ptrs)``
   representation consumed by the Gibbs kernels.
2. **Bag-of-words ingestion** – turn ``docId -> [(wordId, count), ...]``
   mappings into a :class:`Corpus` with a *canonical* token order.
3. **Corpus file loader** – read the ``<docId> <wordId>:<count> ...`` line
   format.

Token order matters: documents are visited by ascending id and each document's
``(wordId, count)`` list is expanded in the order given.  Initialisation and
every sweep walk the tokens in exactly this order, which is what makes a
seeded run reproducible.
"""

from __future__ import annotations

import logging
import os
from typing import Dict, Iterable, List, Mapping, NamedTuple, Optional, Sequence, Tuple

import numpy as np
import jax.numpy as jnp

from lda_cgs.utils.errors import ConfigError, FatalParseError

__all__ = [
    "Corpus",
    "WordCount",
    "expand_words",
    "corpus_from_word_counts",
    "parse_corpus",
    "load_corpus",
]

logger = logging.getLogger(__name__)

WordCount = Tuple[int, int]

################################################################################
# 1. Corpus container ###########################################################
################################################################################

class Corpus(NamedTuple):
    """Minimal container for a bag-of-words corpus."""

    word_ids: jnp.ndarray              # shape (N,)
    doc_ids:  jnp.ndarray              # shape (N,)  dense row 0..D-1
    doc_ptrs: jnp.ndarray              # shape (D + 1,)
    doc_keys: Tuple[int, ...]          # row -> external document id
    vocab_size: int                    # V

    # Convenience helpers ----------------------------------------------------
    @property
    def num_tokens(self) -> int:  # noqa: D401 – short docstring is fine here
        """Total tokens N."""
        return int(self.word_ids.size)

    @property
    def num_docs(self) -> int:  # noqa: D401
        """Number of documents D."""
        return int(self.doc_ptrs.size - 1)

    @property
    def doc_lengths(self) -> jnp.ndarray:
        """Tokens per document, shape (D,)."""
        return jnp.diff(self.doc_ptrs)

    def doc_row(self, doc_key: int) -> int:
        """Row index of the document with external id ``doc_key``."""
        try:
            return self.doc_keys.index(doc_key)
        except ValueError:
            raise KeyError(f"unknown document id {doc_key}") from None

    def doc_tokens(self, row: int) -> jnp.ndarray:
        """Word ids of document ``row`` in token-position order."""
        return self.word_ids[int(self.doc_ptrs[row]):int(self.doc_ptrs[row + 1])]

################################################################################
# 2. Bag-of-words ingestion #####################################################
################################################################################

def expand_words(word_counts: Iterable[WordCount]) -> List[int]:
    """Expand ``(wordId, count)`` pairs into one entry per token instance.

    >>> expand_words([(3, 2), (0, 1)])
    [3, 3, 0]
    """
    words: List[int] = []
    for word_id, count in word_counts:
        words.extend([word_id] * count)
    return words


def corpus_from_word_counts(
    docs: Mapping[int, Sequence[WordCount]],
    *,
    vocab_size: Optional[int] = None,
) -> Corpus:
    """Convert a ``docId -> [(wordId, count), ...]`` mapping into a :class:`Corpus`.

    Parameters
    ----------
    docs
        Bag-of-words per document.  Documents may be empty.
    vocab_size
        Size of the vocabulary.  Defaults to ``max(wordId) + 1``; an explicit
        value must cover every word id that occurs.
    """
    doc_keys = tuple(sorted(docs))

    word_ids: List[int] = []
    doc_ids: List[int] = []
    lengths: List[int] = []
    max_word = -1
    for row, key in enumerate(doc_keys):
        if key < 0:
            raise ConfigError(f"document id must be non-negative, got {key}")
        for word_id, count in docs[key]:
            if word_id < 0 or count < 0:
                raise ConfigError(
                    f"document {key}: word id and count must be non-negative, got {word_id}:{count}"
                )
            max_word = max(max_word, word_id)
        words = expand_words(docs[key])
        word_ids.extend(words)
        doc_ids.extend([row] * len(words))
        lengths.append(len(words))

    if vocab_size is None:
        vocab_size = max_word + 1
    elif vocab_size <= max_word:
        raise ConfigError(f"vocab_size={vocab_size} but word id {max_word} occurs in the corpus")

    # Document pointers for fast slicing -------------------------------------
    doc_ptrs = np.concatenate([[0], np.cumsum(lengths, dtype=np.int64)]).astype(np.int32)

    return Corpus(
        word_ids=jnp.asarray(word_ids, dtype=jnp.int32),
        doc_ids=jnp.asarray(doc_ids, dtype=jnp.int32),
        doc_ptrs=jnp.asarray(doc_ptrs, dtype=jnp.int32),
        doc_keys=doc_keys,
        vocab_size=int(vocab_size),
    )

################################################################################
# 3. Corpus file loader #########################################################
################################################################################

_MAX_FIELD = int(np.iinfo(np.int32).max)


def _parse_uint(text: str, field: str, line_no: int) -> int:
    # int() also accepts "+3", " 3" and "1_000"; the format only allows digits
    if not (text.isascii() and text.isdigit()):
        raise FatalParseError(f"{field} {text!r} is not a non-negative integer", line_no=line_no, field=field)
    value = int(text)
    # ids and counts end up in int32 arrays
    if value > _MAX_FIELD:
        raise FatalParseError(f"{field} {text!r} is out of range (max {_MAX_FIELD})", line_no=line_no, field=field)
    return value


def parse_corpus(lines: Iterable[str]) -> Corpus:
    """Parse corpus lines of the form ``<docId> <wordId>:<count> ...``.

    Malformed lines and malformed ``word:count`` tokens are logged and skipped.
    A numeric field that is not a non-negative integer raises
    :class:`FatalParseError` and nothing is returned.
    """
    docs: Dict[int, List[WordCount]] = {}
    for line_no, raw in enumerate(lines, start=1):
        line = raw.rstrip("\r\n")
        vals = line.split(" ")
        if len(vals) < 2:
            logger.warning("bad document on line %d: %r", line_no, line)
            continue

        doc_id = _parse_uint(vals[0], "document id", line_no)
        if doc_id in docs:
            logger.warning("document %d already exists, appending the tokens of line %d", doc_id, line_no)
        word_counts = docs.setdefault(doc_id, [])

        for kv in vals[1:]:
            wc = kv.split(":")
            if len(wc) != 2:
                logger.warning("bad word count on line %d: %r", line_no, kv)
                continue
            word_id = _parse_uint(wc[0], "word id", line_no)
            count = _parse_uint(wc[1], "word count", line_no)
            word_counts.append((word_id, count))

    corpus = corpus_from_word_counts(docs)
    logger.info("number of documents %d", corpus.num_docs)
    logger.info("vocabulary size %d", corpus.vocab_size)
    return corpus


def load_corpus(path: str | os.PathLike) -> Corpus:
    """Load a corpus file; see :func:`parse_corpus` for the format.

    A file that is not valid UTF-8 raises :class:`FatalParseError`.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            return parse_corpus(f)
    except UnicodeDecodeError as err:
        raise FatalParseError(f"{os.fspath(path)}: not valid UTF-8 at byte {err.start}") from err
