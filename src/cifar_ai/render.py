from __future__ import annotations

from dataclasses import dataclass
from html import escape
from typing import Final, Literal

from .inference.types import Prediction, RankedPredictions

MessageKind = Literal["info", "loading", "success", "error"]

_KINDS: Final[frozenset[str]] = frozenset({"info", "loading", "success", "error"})


@dataclass(frozen=True)
class ResultSummary:
    top: Prediction
    secondary: tuple[Prediction, ...]
    model_id: str

    def to_dict(self) -> dict[str, object]:
        return {
            "label": self.top.label,
            "confidence": self.top.probability,
            "confidence_pct": format_percent(self.top.probability),
            "secondary": [
                {
                    "label": p.label,
                    "probability": p.probability,
                    "confidence_pct": format_percent(p.probability),
                }
                for p in self.secondary
            ],
        }


def format_percent(p: float) -> str:
    return f"{p * 100.0:.1f}%"


def summarize(
    ranked: RankedPredictions, top_k: int = 3, min_probability: float = 0.0
) -> ResultSummary:
    return ResultSummary(
        top=ranked.top,
        secondary=ranked.secondary(top_k, min_probability),
        model_id=ranked.model_id,
    )


def render_html(summary: ResultSummary) -> str:
    top = summary.top
    parts: list[str] = [
        '<div class="results">',
        f"<h3>Top Prediction: {escape(top.label)}</h3>",
        f"<p>Confidence: {format_percent(top.probability)}</p>",
    ]
    if summary.secondary:
        parts.append("<h4>Other possibilities:</h4><ul>")
        for p in summary.secondary:
            parts.append(f"<li>{escape(p.label)} ({format_percent(p.probability)})</li>")
        parts.append("</ul>")
    parts.append("</div>")
    return "".join(parts)


def render_message(message: str, kind: MessageKind = "info") -> str:
    css = kind if kind in _KINDS else "info"
    return f'<p class="{css}">{escape(message)}</p>'


_PAGE: Final[str] = """<!doctype html>
<html lang="en">
<head>
<meta charset="utf-8">
<title>CIFAR-10 Image Classifier</title>
</head>
<body>
<h1>CIFAR-10 Image Classifier</h1>
<form id="dropZone" action="/classify" method="post" enctype="multipart/form-data">
<input id="fileInput" type="file" name="file" accept="image/*" required>
<button type="submit">Classify</button>
</form>
<div id="prediction">{status}</div>
</body>
</html>
"""


def render_page(status_html: str = "") -> str:
    return _PAGE.replace("{status}", status_html)
