from __future__ import annotations

from collections.abc import Sequence

from .inference.types import Prediction, Probs
from .labels import CIFAR10_LABELS


def rank_predictions(
    probs: Probs, labels: Sequence[str] = CIFAR10_LABELS
) -> tuple[Prediction, ...]:
    """Pair each probability with its label and sort descending.

    ``sorted`` is stable, so equal probabilities keep their output-index order.
    """
    if len(probs) != len(labels):
        raise ValueError(f"expected {len(labels)} probabilities, got {len(probs)}")
    order = sorted(range(len(probs)), key=lambda i: -float(probs[i]))
    return tuple(Prediction(label=labels[i], probability=float(probs[i]), index=i) for i in order)
