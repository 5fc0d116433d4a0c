"""BM25 lexical encoder.

The encoder is split into a pure ``fit`` that turns one user's corpus into an
immutable LexicalEncoderState and a pure ``encode`` that maps text to a
sparse vector under that state. No state is kept at module or process level;
every indexing pass fits its own value and threads it through explicitly.

Term indices are CRC32 hashes of the terms instead of positions in the
vocabulary. Two fits over different snapshots of the same corpus therefore
agree on the index of every shared term, and the result of ``fit`` does not
depend on the order of the documents.

BM25 weight of a term t in a document d:

    idf(t) * tf * (k1 + 1) / (tf + k1 * (1 - b + b * |d| / avgdl))
    idf(t) = ln((N - df + 0.5) / (df + 0.5) + 1)
"""

import math
import re
import zlib
from collections import Counter
from typing import Iterable

from pydantic import BaseModel, ConfigDict, Field

from shared.clients.rag.models.VectorPoint import SparseVector

DEFAULT_K1 = 1.5
DEFAULT_B = 0.75

_TOKEN_PATTERN = re.compile(r"\w+", re.UNICODE)


class LexicalEncoderState(BaseModel):
    """Everything ``encode`` needs, fitted from one corpus snapshot.

    Attributes:
        vocabulary:     Term -> sparse index.
        idf:            Term -> inverse document frequency.
        doc_count:      Number of documents the state was fitted on.
        avg_doc_length: Average number of tokens per document.
        k1:             Term-frequency saturation parameter.
        b:              Length normalisation parameter.
    """

    model_config = ConfigDict(frozen=True)

    vocabulary: dict[str, int] = Field(default_factory=dict)
    idf: dict[str, float] = Field(default_factory=dict)
    doc_count: int = 0
    avg_doc_length: float = 0.0
    k1: float = DEFAULT_K1
    b: float = DEFAULT_B

    def is_empty(self) -> bool:
        return not self.vocabulary


def tokenize(text: str | None) -> list[str]:
    """Lower-case the text and split it into word tokens. Punctuation separates tokens."""
    if not text:
        return []
    return _TOKEN_PATTERN.findall(text.lower())


def term_index(term: str) -> int:
    """Stable sparse index of a term."""
    return zlib.crc32(term.encode("utf-8"))


def fit(corpus: Iterable[str], k1: float = DEFAULT_K1, b: float = DEFAULT_B) -> LexicalEncoderState:
    """Fit a BM25 state on a corpus of cleaned texts.

    An empty corpus is valid and yields an empty state; encoding anything
    with it returns an empty vector.

    Args:
        corpus: The documents, e.g. all sent emails of one user.
        k1: Term-frequency saturation.
        b: Document-length normalisation strength.

    Returns:
        LexicalEncoderState: The fitted, immutable state.
    """
    document_frequency: Counter[str] = Counter()
    doc_count = 0
    total_tokens = 0
    for document in corpus:
        tokens = tokenize(document)
        doc_count += 1
        total_tokens += len(tokens)
        document_frequency.update(set(tokens))

    if doc_count == 0:
        return LexicalEncoderState(k1=k1, b=b)

    idf = {
        term: math.log((doc_count - df + 0.5) / (df + 0.5) + 1)
        for term, df in document_frequency.items()
    }
    return LexicalEncoderState(
        vocabulary={term: term_index(term) for term in document_frequency},
        idf=idf,
        doc_count=doc_count,
        avg_doc_length=total_tokens / doc_count,
        k1=k1,
        b=b,
    )


def encode(state: LexicalEncoderState, text: str | None) -> SparseVector:
    """Encode text into a BM25-weighted sparse vector.

    Terms outside the fitted vocabulary are dropped. The output is sorted by
    index, so encoding the same text twice with the same state gives
    identical vectors.
    """
    tokens = tokenize(text)
    if state.is_empty() or not tokens:
        return SparseVector()

    doc_len = len(tokens)
    avg_len = state.avg_doc_length or 1.0
    length_norm = 1 - state.b + state.b * (doc_len / avg_len)

    weights: dict[int, float] = {}
    for term, tf in Counter(tokens).items():
        idx = state.vocabulary.get(term)
        if idx is None:
            continue
        score = state.idf[term] * (tf * (state.k1 + 1)) / (tf + state.k1 * length_norm)
        if score > 0:
            # hash collisions share one slot
            weights[idx] = weights.get(idx, 0.0) + score

    indices = sorted(weights)
    return SparseVector(indices=indices, values=[weights[i] for i in indices])
