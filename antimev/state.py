"""
World state with transactional overlays.

Writes made inside ``transaction()`` land in an overlay frame. Frames nest:
a successful inner frame merges into its parent and the outermost frame is
flushed to the database in a single write batch. An exception discards the
frame and propagates, so nothing half-applied is ever visible.
"""
import logging
from contextlib import contextmanager
from typing import Any, Optional

import msgpack

logger = logging.getLogger(__name__)

_DELETED = object()


class StateStore:
    def __init__(self, db):
        self.db = db
        self._frames: list[dict] = []

    @property
    def in_transaction(self) -> bool:
        return bool(self._frames)

    @property
    def depth(self) -> int:
        return len(self._frames)

    def get(self, key: bytes) -> Optional[bytes]:
        for frame in reversed(self._frames):
            if key in frame:
                value = frame[key]
                return None if value is _DELETED else value
        return self.db.get(key)

    def set(self, key: bytes, value: bytes):
        if self._frames:
            self._frames[-1][key] = value
        else:
            self.db.put(key, value)

    def delete(self, key: bytes):
        if self._frames:
            self._frames[-1][key] = _DELETED
        else:
            self.db.delete(key)

    def get_obj(self, key: bytes, default: Any = None) -> Any:
        raw = self.get(key)
        if raw is None:
            return default
        return msgpack.unpackb(raw, raw=False)

    def set_obj(self, key: bytes, obj: Any):
        self.set(key, msgpack.packb(obj, use_bin_type=True))

    @contextmanager
    def transaction(self):
        """
        Open an overlay frame.

        Example:
            with state.transaction():
                state.set_obj(b'k', 1)
                raise ValidationError("nope")   # k is never written
        """
        frame: dict = {}
        self._frames.append(frame)
        try:
            yield self
        except Exception:
            self._frames.pop()
            logger.debug(f"Discarded {len(frame)} pending writes at depth {len(self._frames)}")
            raise
        self._frames.pop()
        if self._frames:
            self._frames[-1].update(frame)
        else:
            self._commit(frame)

    def _commit(self, frame: dict):
        if not frame:
            return
        with self.db.write_batch() as batch:
            for key, value in frame.items():
                if value is _DELETED:
                    batch.delete(key)
                else:
                    batch.put(key, value)
        logger.debug(f"Committed {len(frame)} state writes")
