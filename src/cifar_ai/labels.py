from __future__ import annotations

from typing import Final

# Index i is model output channel i.
CIFAR10_LABELS: Final[tuple[str, ...]] = (
    "airplane",
    "automobile",
    "bird",
    "cat",
    "deer",
    "dog",
    "frog",
    "horse",
    "ship",
    "truck",
)

N_CLASSES: Final[int] = len(CIFAR10_LABELS)
