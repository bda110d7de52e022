from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

import numpy as np

from .models import QualityVerdict


@runtime_checkable
class VideoSource(Protocol):
    def start(self, target: int) -> bool: ...

    def stop(self) -> None: ...

    def grab_frame(self) -> Optional[np.ndarray]: ...

    @property
    def is_live(self) -> bool: ...


@runtime_checkable
class EmbeddingExtractor(Protocol):
    @property
    def ready(self) -> bool: ...

    def load(self) -> None: ...

    def extract(self, frame: np.ndarray) -> Optional[np.ndarray]: ...


@runtime_checkable
class QualityAdvisor(Protocol):
    def check(self, frame: np.ndarray) -> QualityVerdict: ...
