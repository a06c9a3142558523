from __future__ import annotations

import os
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor

import torch
from torch import Tensor

from ..config import Settings
from ..logging import get_logger
from ..ranking import rank_predictions
from .fetch import ArtifactFetcher
from .loader import Fetcher, LoadedModel, ModelLoadError, load_model
from .manifest import INPUT_SIZE
from .types import EngineState, RankedPredictions


class InferenceEngine:
    """Owns the model handle and a bounded thread pool for forward passes.

    Lifecycle: ``uninitialized -> loading -> ready`` or ``loading -> error``.
    Once ready the handle is never replaced; from ``error`` the next call to
    :meth:`ensure_loaded` tries again.
    """

    def __init__(self, settings: Settings, fetcher: Fetcher | None = None) -> None:
        self._settings = settings
        self._logger = get_logger()
        self._fetcher: Fetcher = fetcher or ArtifactFetcher.from_config(settings.model)
        self._pool = _make_pool(settings)
        self._load_lock = threading.Lock()
        self._state = EngineState.uninitialized
        self._loaded: LoadedModel | None = None
        self._last_error: str | None = None
        torch.set_num_threads(1)

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def ready(self) -> bool:
        return self._state is EngineState.ready

    @property
    def last_error(self) -> str | None:
        return self._last_error

    @property
    def loaded(self) -> LoadedModel | None:
        return self._loaded

    @property
    def model_id(self) -> str | None:
        return self._loaded.model_id if self._loaded is not None else None

    def ensure_loaded(self) -> bool:
        if self._state is EngineState.ready:
            return True
        with self._load_lock:
            # Another caller may have finished the load while we waited
            if self._state is EngineState.ready:
                return True
            self._state = EngineState.loading
            cfg = self._settings.model
            try:
                loaded = load_model(
                    cfg.sources,
                    self._fetcher,
                    weight_path_prefix=cfg.weight_path_prefix,
                    max_workers=cfg.max_fetch_workers,
                )
            except ModelLoadError as exc:
                self._state = EngineState.error
                self._last_error = str(exc)
                self._logger.error("model_load_failed error=%s", exc)
                return False
            except Exception as exc:
                self._state = EngineState.error
                self._last_error = f"Failed to load model: {exc}"
                self._logger.exception("model_load_failed_unexpected error=%s", exc)
                return False
            self._loaded = loaded
            self._last_error = None
            self._state = EngineState.ready
            return True

    def start_background_load(self) -> Future[bool]:
        return self._pool.submit(self.ensure_loaded)

    def submit_classify(self, preprocessed: Tensor) -> Future[RankedPredictions]:
        return self._pool.submit(self.classify, preprocessed)

    def classify(self, preprocessed: Tensor) -> RankedPredictions:
        loaded = self._loaded
        if loaded is None:
            raise RuntimeError("Model not loaded")
        t0 = time.perf_counter()
        batch = _as_batch(preprocessed)
        with torch.no_grad():
            logits = loaded.model(batch)
        probs = torch.softmax(logits.to(torch.float32), dim=1)[0]
        ranked = rank_predictions([float(p) for p in probs.tolist()])
        dt_ms = int((time.perf_counter() - t0) * 1000.0)
        return RankedPredictions(predictions=ranked, model_id=loaded.model_id, latency_ms=dt_ms)

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)
        close = getattr(self._fetcher, "close", None)
        if callable(close):
            close()


def _make_pool(settings: Settings) -> ThreadPoolExecutor:
    size = settings.app.threads or min(8, os.cpu_count() or 1)
    return ThreadPoolExecutor(max_workers=size, thread_name_prefix="classify")


def _as_batch(x: Tensor) -> Tensor:
    t = x.unsqueeze(0) if x.ndim == 3 else x
    if t.ndim != 4 or tuple(t.shape[1:]) != (3, INPUT_SIZE, INPUT_SIZE):
        raise ValueError(f"expected input of shape (N, 3, {INPUT_SIZE}, {INPUT_SIZE})")
    return t.to(dtype=torch.float32)
