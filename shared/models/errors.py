"""Exception hierarchy for the retrieval core.

Expected-empty situations (a user without a collection or corpus yet) are not
exceptions; they are reported as unsuccessful results. Everything below is an
upstream failure that aborts the operation in flight.
"""


class RetrievalError(Exception):
    """Base class for all failures raised by the retrieval core."""

    def __init__(self, message: str, code: str = "RETRIEVAL_ERROR") -> None:
        super().__init__(message)
        self.code = code


class EmbeddingError(RetrievalError):
    """The semantic embedding backend is unreachable or answered with garbage."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="EMBEDDING_ERROR")


class StoreError(RetrievalError):
    """A request against the vector store failed."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="STORE_ERROR")


class SearchTimeoutError(RetrievalError):
    """A search did not finish within its configured time budget."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="SEARCH_TIMEOUT")


class InvalidVectorError(RetrievalError):
    """A dense vector does not match the configured dimensionality."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="INVALID_VECTOR")
