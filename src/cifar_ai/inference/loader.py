from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Final, Protocol

import torch
from torch import Tensor, nn

from ..logging import get_logger, log_event
from .fetch import FetchError, resolve
from .manifest import (
    ModelDescriptor,
    ModelTopology,
    WeightGroup,
    WeightSpec,
    decode_group,
    encode_tensor,
)
from .shards import FetchBytes, ShardFetchError, assemble_shards, split_shards

MODEL_JSON: Final[str] = "model.json"
DEFAULT_SHARD_BYTES: Final[int] = 4 * 1024 * 1024


class ModelLoadError(RuntimeError):
    pass


class TorchModel(Protocol):
    def eval(self) -> object: ...
    def __call__(self, x: Tensor) -> Tensor: ...
    def load_state_dict(self, sd: Mapping[str, Tensor], strict: bool = ...) -> object: ...
    def state_dict(self) -> dict[str, Tensor]: ...


class Fetcher(Protocol):
    def fetch_bytes(self, location: str) -> bytes: ...


@dataclass(frozen=True)
class LoadedModel:
    descriptor: ModelDescriptor
    model: TorchModel
    source: str

    @property
    def model_id(self) -> str:
        return self.descriptor.model_id


if TYPE_CHECKING:

    def build_model(arch: str, n_classes: int) -> TorchModel: ...
else:

    def build_model(arch: str, n_classes: int) -> TorchModel:
        if arch == "cifar_cnn":
            return nn.Sequential(
                nn.Conv2d(3, 32, kernel_size=3, padding=1),
                nn.ReLU(),
                nn.MaxPool2d(2),
                nn.Conv2d(32, 64, kernel_size=3, padding=1),
                nn.ReLU(),
                nn.MaxPool2d(2),
                nn.Conv2d(64, 64, kernel_size=3, padding=1),
                nn.ReLU(),
                nn.MaxPool2d(2),
                nn.Flatten(),
                nn.Linear(64 * 4 * 4, 128),
                nn.ReLU(),
                nn.Linear(128, int(n_classes)),
            )
        if arch == "resnet18_cifar":
            from torchvision.models import resnet18

            inner = resnet18(weights=None, num_classes=int(n_classes))
            # CIFAR-style stem: 3x3 conv, no max-pool, for 32x32 inputs
            inner.conv1 = nn.Conv2d(3, 64, kernel_size=3, stride=1, padding=1, bias=False)
            inner.maxpool = nn.Identity()
            return inner
        raise ValueError(f"unsupported arch: {arch}")


def load_model(
    sources: Sequence[str],
    fetcher: Fetcher,
    *,
    weight_path_prefix: str = "",
    max_workers: int = 4,
) -> LoadedModel:
    """Load from the first source that works, falling back in order.

    A source that fails is logged and skipped; only when every source fails
    is :class:`ModelLoadError` raised, carrying the last failure.
    """
    if not sources:
        raise ModelLoadError("no model sources configured")
    logger = get_logger()
    last_err = ""
    for source in sources:
        try:
            loaded = load_from_source(
                source, fetcher, weight_path_prefix=weight_path_prefix, max_workers=max_workers
            )
        except (FetchError, ShardFetchError, ValueError) as exc:
            last_err = str(exc)
            logger.warning("model_source_failed source=%s error=%s", source, last_err)
            continue
        log_event(
            "model_loaded",
            {
                "model_id": loaded.model_id,
                "source": source,
                "shards": sum(len(g.paths) for g in loaded.descriptor.weight_groups),
            },
        )
        return loaded
    raise ModelLoadError(f"Failed to load model: {last_err}")


def load_from_source(
    source: str,
    fetcher: Fetcher,
    *,
    weight_path_prefix: str = "",
    max_workers: int = 4,
) -> LoadedModel:
    descriptor = ModelDescriptor.from_json(fetcher.fetch_bytes(resolve(source, MODEL_JSON)))
    weights_base = weight_path_prefix or source
    fetch: FetchBytes = fetcher.fetch_bytes
    state_dict: dict[str, Tensor] = {}
    for group in descriptor.weight_groups:
        urls = [resolve(weights_base, p) for p in group.paths]
        buf = assemble_shards(urls, fetch, max_workers=max_workers)
        state_dict.update(decode_group(group, buf))
    model = build_model(descriptor.topology.arch, descriptor.topology.n_classes)
    try:
        model.load_state_dict(state_dict, strict=True)
    except RuntimeError as exc:
        raise ValueError(f"weights do not match {descriptor.topology.arch}: {exc}") from None
    model.eval()
    return LoadedModel(descriptor=descriptor, model=model, source=source)


def export_model(
    state_dict: Mapping[str, Tensor],
    topology: ModelTopology,
    out_dir: Path,
    *,
    shard_bytes: int = DEFAULT_SHARD_BYTES,
    generated_by: str = "",
) -> ModelDescriptor:
    """Write ``model.json`` and ``group1-shardKofN.bin`` files into ``out_dir``."""
    specs: list[WeightSpec] = []
    chunks: list[bytes] = []
    for name, t in state_dict.items():
        spec, data = encode_tensor(name, t)
        specs.append(spec)
        chunks.append(data)
    shards = split_shards(b"".join(chunks), shard_bytes)
    n = len(shards)
    paths = tuple(f"group1-shard{i + 1}of{n}.bin" for i in range(n))
    out_dir.mkdir(parents=True, exist_ok=True)
    for path, shard in zip(paths, shards, strict=True):
        (out_dir / path).write_bytes(shard)
    descriptor = ModelDescriptor(
        topology=topology,
        weight_groups=(WeightGroup(paths=paths, weights=tuple(specs)),),
        generated_by=generated_by,
    )
    (out_dir / MODEL_JSON).write_text(json.dumps(descriptor.to_dict(), indent=2), encoding="utf-8")
    get_logger().info(
        "model_exported model_id=%s shards=%d dir=%s", topology.model_id, n, out_dir.as_posix()
    )
    return descriptor


def fresh_state_dict(arch: str, n_classes: int, seed: int = 0) -> dict[str, Tensor]:
    torch.manual_seed(seed)
    return dict(build_model(arch, n_classes).state_dict())
