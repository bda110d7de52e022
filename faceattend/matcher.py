import threading
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

import numpy as np

from .exceptions import DimensionMismatchError, ValidationError
from .logger import setup_logger
from .models import Identity, Match, MatchResult, NoMatch


def euclidean_distance(a: np.ndarray, b: np.ndarray) -> float:
    a = np.asarray(a, dtype=np.float32).ravel()
    b = np.asarray(b, dtype=np.float32).ravel()
    if a.shape[0] != b.shape[0]:
        raise DimensionMismatchError(expected=a.shape[0], actual=b.shape[0])
    return float(np.linalg.norm(a - b))


@dataclass(frozen=True)
class _GallerySnapshot:
    identity_ids: Tuple[str, ...]
    display_names: Tuple[str, ...]
    matrix: np.ndarray
    threshold: float

    @property
    def dimension(self) -> int:
        return int(self.matrix.shape[1]) if self.matrix.ndim == 2 else 0


class FaceMatcher:
    """Nearest-neighbour matcher over one reference embedding per identity.

    The gallery is rebuilt from scratch on every change and swapped in as an
    immutable snapshot, so a probe is always compared against one consistent
    identity set and threshold.
    """

    def __init__(self) -> None:
        self.logger = setup_logger(self.__class__.__name__)
        self._lock = threading.Lock()
        self._snapshot: Optional[_GallerySnapshot] = None

    @property
    def has_gallery(self) -> bool:
        return self._snapshot is not None

    @property
    def size(self) -> int:
        snapshot = self._snapshot
        return len(snapshot.identity_ids) if snapshot else 0

    @property
    def dimension(self) -> int:
        snapshot = self._snapshot
        return snapshot.dimension if snapshot else 0

    @property
    def threshold(self) -> Optional[float]:
        snapshot = self._snapshot
        return snapshot.threshold if snapshot else None

    @property
    def identity_ids(self) -> Tuple[str, ...]:
        snapshot = self._snapshot
        return snapshot.identity_ids if snapshot else ()

    def display_name(self, identity_id: str) -> str:
        snapshot = self._snapshot
        if snapshot is None:
            return identity_id
        try:
            return snapshot.display_names[snapshot.identity_ids.index(identity_id)]
        except ValueError:
            return identity_id

    def rebuild(self, identities: Iterable[Identity], threshold: float) -> None:
        if threshold < 0:
            raise ValidationError("Recognition threshold cannot be negative.")

        records: List[Identity] = [rec for rec in identities if rec.embedding.size > 0]
        if not records:
            with self._lock:
                self._snapshot = None
            self.logger.info("Gallery cleared; no enrolled identities")
            return

        dimension = records[0].dimension
        for rec in records[1:]:
            if rec.dimension != dimension:
                self.logger.error(
                    "Identity %s has embedding length %d, expected %d",
                    rec.identity_id,
                    rec.dimension,
                    dimension,
                )
                raise DimensionMismatchError(expected=dimension, actual=rec.dimension)

        matrix = np.vstack([rec.embedding.astype(np.float32) for rec in records])
        snapshot = _GallerySnapshot(
            identity_ids=tuple(rec.identity_id for rec in records),
            display_names=tuple(rec.display_name for rec in records),
            matrix=matrix,
            threshold=float(threshold),
        )
        with self._lock:
            self._snapshot = snapshot
        self.logger.info(
            "Gallery rebuilt with %d identities (dim=%d, threshold=%.3f)",
            len(records),
            dimension,
            threshold,
        )

    def find_best_match(self, probe: np.ndarray) -> MatchResult:
        with self._lock:
            snapshot = self._snapshot
        if snapshot is None:
            return NoMatch(best_distance=None)

        query = np.asarray(probe, dtype=np.float32).ravel()
        if query.shape[0] != snapshot.dimension:
            self.logger.error(
                "Probe length %d does not match gallery dimension %d",
                query.shape[0],
                snapshot.dimension,
            )
            raise DimensionMismatchError(expected=snapshot.dimension, actual=query.shape[0])

        distances = np.linalg.norm(snapshot.matrix - query, axis=1)
        # argmin returns the first minimum, so ties resolve in gallery order.
        idx = int(np.argmin(distances))
        best = float(distances[idx])

        if best <= snapshot.threshold:
            return Match(identity_id=snapshot.identity_ids[idx], distance=best)
        return NoMatch(best_distance=best)
