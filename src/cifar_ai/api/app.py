from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from concurrent.futures import TimeoutError as _FutTimeout
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI, File, Header, Request, UploadFile
from fastapi.params import Depends as DependsParamType
from fastapi.responses import HTMLResponse, JSONResponse
from PIL import Image, ImageFile
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import FormData

from ..config import Limits, Settings
from ..errors import AppError, ErrorCode, app_error, new_error
from ..inference.engine import InferenceEngine
from ..inference.types import EngineState, RankedPredictions
from ..logging import get_logger, init_logging, log_event
from ..middleware import RequestIdMiddleware, api_key_dependency
from ..preprocess import decode_image, run_preprocess
from ..render import render_html, render_message, render_page, summarize
from ..request_context import request_id_var
from ..version import get_version
from .schemas import ClassifyResponse

ImageFile.LOAD_TRUNCATED_IMAGES = False


async def _handle_app_error(_: Request, exc: AppError) -> JSONResponse:
    body = new_error(exc.code, request_id_var.get(), message=exc.message)
    return JSONResponse(status_code=exc.http_status, content=body.to_dict())


async def _handle_unexpected(_: Request, exc: Exception) -> JSONResponse:
    get_logger().error("unhandled_exception type=%s", type(exc).__name__)
    body = new_error(ErrorCode.internal_error, request_id_var.get())
    return JSONResponse(status_code=500, content=body.to_dict())


def _strict_validate_multipart(form: FormData) -> None:
    for key in form:
        if key != "file":
            raise app_error(ErrorCode.malformed_multipart, "Unexpected form field")
    n_files = len(form.getlist("file"))
    if n_files != 1:
        raise app_error(
            ErrorCode.malformed_multipart,
            "Multiple file parts not allowed" if n_files > 1 else "Missing file part",
        )


def _ensure_image_content_type(ctype: str) -> None:
    if not ctype.startswith("image/"):
        raise app_error(ErrorCode.unsupported_media_type)


def _validate_image_dimensions(img: Image.Image, limits: Limits) -> None:
    if max(img.size) > limits.max_side_px:
        raise app_error(ErrorCode.bad_dimensions, "Image dimensions too large")


async def _read_upload(file: UploadFile, limits: Limits, content_length: int | None) -> bytes:
    if content_length is not None and content_length > limits.max_bytes:
        raise app_error(ErrorCode.too_large, "Request body too large")
    try:
        raw = await file.read()
    except OSError as exc:
        raise app_error(ErrorCode.file_read_failed, f"Failed to read file: {exc}") from None
    if len(raw) > limits.max_bytes:
        raise app_error(ErrorCode.too_large, "File exceeds size limit")
    return raw


class _Pipeline:
    """Upload -> ranked predictions, shared by the JSON and HTML routes."""

    def __init__(self, engine: InferenceEngine, settings: Settings, limits: Limits) -> None:
        self._engine = engine
        self._settings = settings
        self._limits = limits

    async def run(
        self, request: Request, file: UploadFile, content_length: int | None
    ) -> RankedPredictions:
        form = await request.form()
        _strict_validate_multipart(form)
        # Reject non-images before any model fetch or forward pass
        if self._settings.classify.check_mime:
            _ensure_image_content_type((file.content_type or "").lower())

        raw = await _read_upload(file, self._limits, content_length)
        img = decode_image(raw)
        _validate_image_dimensions(img, self._limits)
        pre = run_preprocess(img)

        engine = self._engine
        if not await run_in_threadpool(engine.ensure_loaded):
            raise app_error(ErrorCode.model_load_failed, engine.last_error)

        fut = engine.submit_classify(pre.tensor)
        try:
            out = fut.result(timeout=float(self._settings.classify.predict_timeout_seconds))
        except _FutTimeout:
            fut.cancel()
            raise app_error(ErrorCode.timeout, "Classification timed out") from None
        except RuntimeError as err:
            if "Model not loaded" in str(err):
                raise app_error(ErrorCode.service_not_ready) from None
            get_logger().error("classification_failed error=%s", err)
            raise app_error(ErrorCode.classification_failed) from None
        except ValueError as err:
            get_logger().error("classification_failed error=%s", err)
            raise app_error(ErrorCode.classification_failed) from None

        log_event(
            "classify_finished",
            {
                "latency_ms": out.latency_ms,
                "label": out.top.label,
                "confidence": out.top.probability,
                "model_id": out.model_id,
            },
        )
        return out


def _register_basic(app: FastAPI, engine: InferenceEngine) -> None:
    async def _healthz() -> dict[str, str]:
        return {"status": "ok"}

    async def _readyz() -> dict[str, object]:
        if engine.ready:
            return {"status": "ready"}
        return {
            "status": "not_ready",
            "state": engine.state.value,
            "error": engine.last_error,
            "build": get_version().build,
        }

    async def _version() -> dict[str, object]:
        v = get_version()
        return {"service": v.service, "version": v.version, "build": v.build, "commit": v.commit}

    async def _model_active() -> dict[str, object]:
        loaded = engine.loaded
        if loaded is None:
            return {"model_loaded": False, "model_id": None, "state": engine.state.value}
        topo = loaded.descriptor.topology
        return {
            "model_loaded": True,
            "model_id": topo.model_id,
            "arch": topo.arch,
            "n_classes": topo.n_classes,
            "input_size": topo.input_size,
            "source": loaded.source,
            "shards": sum(len(g.paths) for g in loaded.descriptor.weight_groups),
        }

    app.add_api_route("/healthz", _healthz, methods=["GET"])
    app.add_api_route("/readyz", _readyz, methods=["GET"])
    app.add_api_route("/version", _version, methods=["GET"])
    app.add_api_route("/v1/models/active", _model_active, methods=["GET"])


def _status_message(engine: InferenceEngine) -> str:
    state = engine.state
    if state is EngineState.ready:
        return render_message("Model loaded successfully!", "success")
    if state is EngineState.error:
        return render_message(f"Failed to load model: {engine.last_error}", "error")
    return render_message("Loading model...", "loading")


def _register_classify(
    app: FastAPI,
    dep_api_key: Callable[[str | None], None],
    pipeline: _Pipeline,
    engine: InferenceEngine,
    settings: Settings,
) -> None:
    top_k = int(settings.classify.top_k)
    min_prob = float(settings.classify.min_secondary_probability)

    async def _classify_json(
        request: Request,
        file: Annotated[UploadFile, File(...)],
        content_length: int | None = Header(default=None, alias="Content-Length"),
    ) -> dict[str, object]:
        out = await pipeline.run(request, file, content_length)
        summary = summarize(out, top_k, min_prob)
        body = summary.to_dict()
        body["predictions"] = [
            {"label": p.label, "probability": p.probability} for p in out.predictions
        ]
        body["secondary"] = [
            {"label": p.label, "probability": p.probability} for p in summary.secondary
        ]
        body["model_id"] = out.model_id
        body["latency_ms"] = out.latency_ms
        return body

    async def _classify_html(
        request: Request,
        file: Annotated[UploadFile, File(...)],
        content_length: int | None = Header(default=None, alias="Content-Length"),
    ) -> HTMLResponse:
        try:
            out = await pipeline.run(request, file, content_length)
        except AppError as exc:
            return HTMLResponse(render_message(exc.message, "error"), status_code=exc.http_status)
        return HTMLResponse(render_html(summarize(out, top_k, min_prob)))

    async def _index() -> HTMLResponse:
        return HTMLResponse(render_page(_status_message(engine)))

    api_dep: DependsParamType = Depends(dep_api_key)
    app.add_api_route("/", _index, methods=["GET"], response_class=HTMLResponse)
    app.add_api_route(
        "/v1/classify",
        _classify_json,
        methods=["POST"],
        response_model=ClassifyResponse,
        dependencies=[api_dep],
    )
    app.add_api_route(
        "/classify",
        _classify_html,
        methods=["POST"],
        response_class=HTMLResponse,
        dependencies=[api_dep],
    )


def create_app(
    settings: Settings | None = None,
    engine_provider: Callable[[], InferenceEngine] | None = None,
) -> FastAPI:
    """Application factory.

    Parameters:
    - `settings`: Optional pre-loaded settings; when omitted, loads from env/TOML.
    - `engine_provider`: Optional provider for a custom `InferenceEngine` (primarily for tests).

    When ``settings.model.preload`` is set, the model starts loading in the
    background as the app starts; requests otherwise load it on first use.
    """
    s = settings or Settings.load()
    init_logging()
    engine: InferenceEngine = (
        engine_provider() if engine_provider is not None else InferenceEngine(s)
    )

    @asynccontextmanager
    async def _lifespan(_: FastAPI) -> AsyncIterator[None]:
        if s.model.preload:
            engine.start_background_load()
        try:
            yield
        finally:
            engine.shutdown()

    app = FastAPI(title="cifar-ai", version=get_version().version, lifespan=_lifespan)
    app.add_middleware(RequestIdMiddleware)
    app.add_exception_handler(AppError, _handle_app_error)
    app.add_exception_handler(Exception, _handle_unexpected)
    app.state.engine = engine

    limits = Limits.from_settings(s)
    pipeline = _Pipeline(engine, s, limits)
    _register_basic(app, engine)
    _register_classify(app, api_key_dependency(s), pipeline, engine, s)
    return app
