"""File-backed store of published lexical encoder states.

A state becomes visible to queries and ingestion only once the migration
has finished a user and published it. Publishing writes a temporary file and
swaps it in with os.replace, so readers see either the previous state or the
new one, never a partial fit.
"""

import hashlib
import os
import tempfile

from shared.helper.HelperConfig import HelperConfig
from shared.lexical.LexicalEncoder import LexicalEncoderState


class LexicalStateStore:
    """Publishes and loads one LexicalEncoderState per user."""

    def __init__(self, helper_config: HelperConfig, state_dir: str) -> None:
        self.logging = helper_config.get_logger()
        self._state_dir = state_dir
        # user_id -> (mtime_ns, state)
        self._cache: dict[str, tuple[int, LexicalEncoderState]] = {}

    ##########################################
    ################ GETTER ##################
    ##########################################

    def _get_path(self, user_id: str) -> str:
        digest = hashlib.sha256(user_id.encode("utf-8")).hexdigest()[:32]
        return os.path.join(self._state_dir, f"{digest}.json")

    ##########################################
    ################ ACCESS ##################
    ##########################################

    def publish(self, user_id: str, state: LexicalEncoderState) -> None:
        """Atomically make a freshly fitted state the current one for a user."""
        os.makedirs(self._state_dir, exist_ok=True)
        target = self._get_path(user_id)
        fd, tmp_path = tempfile.mkstemp(dir=self._state_dir, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(state.model_dump_json())
            os.replace(tmp_path, target)
        except Exception:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
        self._cache.pop(user_id, None)
        self.logging.info(
            "Published lexical state for user '%s' (%d terms, %d documents).",
            user_id, len(state.vocabulary), state.doc_count,
        )

    def load(self, user_id: str) -> LexicalEncoderState | None:
        """Return the last published state of a user, or None if none was ever published."""
        path = self._get_path(user_id)
        try:
            mtime = os.stat(path).st_mtime_ns
        except FileNotFoundError:
            self._cache.pop(user_id, None)
            return None

        cached = self._cache.get(user_id)
        if cached and cached[0] == mtime:
            return cached[1]

        with open(path, "r", encoding="utf-8") as handle:
            state = LexicalEncoderState.model_validate_json(handle.read())
        self._cache[user_id] = (mtime, state)
        return state

    def delete(self, user_id: str) -> None:
        """Forget the published state of a user."""
        self._cache.pop(user_id, None)
        path = self._get_path(user_id)
        if os.path.exists(path):
            os.remove(path)
            self.logging.info("Deleted lexical state for user '%s'.", user_id)
