from __future__ import annotations

import json
import math
import struct
import sys
from dataclasses import dataclass
from typing import Final

import torch
from torch import Tensor

from ..labels import N_CLASSES

MODEL_FORMAT: Final[str] = "layers-model"
INPUT_SIZE: Final[int] = 32
SUPPORTED_ARCHS: Final[tuple[str, ...]] = ("cifar_cnn", "resnet18_cifar")
_DTYPES: Final[dict[str, tuple[torch.dtype, int]]] = {
    "float32": (torch.float32, 4),
    "int32": (torch.int32, 4),
}

# Shards are little-endian; big-endian hosts swap each word after reading
_SWAP_BYTES: Final[bool] = sys.byteorder == "big"


@dataclass(frozen=True)
class WeightSpec:
    name: str
    shape: tuple[int, ...]
    dtype: str

    @property
    def nbytes(self) -> int:
        return math.prod(self.shape) * _DTYPES[self.dtype][1]

    def to_dict(self) -> dict[str, object]:
        return {"name": self.name, "shape": list(self.shape), "dtype": self.dtype}


@dataclass(frozen=True)
class WeightGroup:
    paths: tuple[str, ...]
    weights: tuple[WeightSpec, ...]

    @property
    def nbytes(self) -> int:
        return sum(w.nbytes for w in self.weights)

    def to_dict(self) -> dict[str, object]:
        return {"paths": list(self.paths), "weights": [w.to_dict() for w in self.weights]}


@dataclass(frozen=True)
class ModelTopology:
    model_id: str
    arch: str
    n_classes: int = N_CLASSES
    input_size: int = INPUT_SIZE

    def to_dict(self) -> dict[str, object]:
        return {
            "model_id": self.model_id,
            "arch": self.arch,
            "n_classes": self.n_classes,
            "input_size": self.input_size,
        }


@dataclass(frozen=True)
class ModelDescriptor:
    """Parsed ``model.json``: the topology plus where its weights live."""

    topology: ModelTopology
    weight_groups: tuple[WeightGroup, ...]
    generated_by: str = ""

    @property
    def model_id(self) -> str:
        return self.topology.model_id

    @staticmethod
    def from_json(s: str | bytes) -> ModelDescriptor:
        try:
            obj: object = json.loads(s)
        except json.JSONDecodeError as exc:
            raise ValueError(f"model.json is not valid JSON: {exc.msg}") from None
        if not isinstance(obj, dict):
            raise ValueError("model.json must be a JSON object")
        return ModelDescriptor.from_dict({str(k): v for k, v in obj.items()})

    @staticmethod
    def from_dict(d: dict[str, object]) -> ModelDescriptor:
        fmt = str(d.get("format", "")).strip()
        if fmt != MODEL_FORMAT:
            raise ValueError(f"unsupported model format: {fmt or '<missing>'}")
        topology = _parse_topology(d.get("modelTopology"))
        groups_raw = d.get("weightsManifest")
        if not isinstance(groups_raw, list) or not groups_raw:
            raise ValueError("weightsManifest must be a non-empty list")
        groups = tuple(_parse_group(g) for g in groups_raw)
        names = [w.name for g in groups for w in g.weights]
        if len(names) != len(set(names)):
            raise ValueError("duplicate weight names in weightsManifest")
        return ModelDescriptor(
            topology=topology,
            weight_groups=groups,
            generated_by=str(d.get("generatedBy", "")),
        )

    def to_dict(self) -> dict[str, object]:
        out: dict[str, object] = {
            "format": MODEL_FORMAT,
            "modelTopology": self.topology.to_dict(),
            "weightsManifest": [g.to_dict() for g in self.weight_groups],
        }
        if self.generated_by:
            out["generatedBy"] = self.generated_by
        return out


def _parse_topology(raw: object) -> ModelTopology:
    if not isinstance(raw, dict):
        raise ValueError("modelTopology must be an object")
    model_id = str(raw.get("model_id", "")).strip()
    arch = str(raw.get("arch", "")).strip()
    if not model_id or not arch:
        raise ValueError("modelTopology is missing model_id or arch")
    if arch not in SUPPORTED_ARCHS:
        raise ValueError(f"unsupported arch: {arch}")
    n_classes = int(str(raw.get("n_classes", N_CLASSES)))
    input_size = int(str(raw.get("input_size", INPUT_SIZE)))
    if n_classes != N_CLASSES:
        raise ValueError(f"n_classes must be {N_CLASSES}")
    if input_size != INPUT_SIZE:
        raise ValueError(f"input_size must be {INPUT_SIZE}")
    return ModelTopology(model_id=model_id, arch=arch, n_classes=n_classes, input_size=input_size)


def _parse_group(raw: object) -> WeightGroup:
    if not isinstance(raw, dict):
        raise ValueError("weight group must be an object")
    paths = raw.get("paths")
    weights = raw.get("weights")
    if not isinstance(paths, list) or not paths:
        raise ValueError("weight group paths must be a non-empty list")
    if not isinstance(weights, list) or not weights:
        raise ValueError("weight group weights must be a non-empty list")
    return WeightGroup(
        paths=tuple(str(p) for p in paths),
        weights=tuple(_parse_spec(w) for w in weights),
    )


def _parse_spec(raw: object) -> WeightSpec:
    if not isinstance(raw, dict):
        raise ValueError("weight spec must be an object")
    name = str(raw.get("name", "")).strip()
    shape = raw.get("shape")
    dtype = str(raw.get("dtype", "float32"))
    if not name:
        raise ValueError("weight spec is missing a name")
    if not isinstance(shape, list) or not all(isinstance(n, int) and n >= 0 for n in shape):
        raise ValueError(f"invalid shape for weight {name}")
    if dtype not in _DTYPES:
        raise ValueError(f"unsupported dtype {dtype} for weight {name}")
    return WeightSpec(name=name, shape=tuple(shape), dtype=dtype)


def decode_group(group: WeightGroup, buf: bytes) -> dict[str, Tensor]:
    """Slice an assembled group buffer into named tensors (little-endian)."""
    if len(buf) != group.nbytes:
        raise ValueError(
            f"weight buffer holds {len(buf)} bytes, manifest expects {group.nbytes}"
        )
    out: dict[str, Tensor] = {}
    offset = 0
    for spec in group.weights:
        dtype, _ = _DTYPES[spec.dtype]
        chunk = bytearray(buf[offset : offset + spec.nbytes])
        offset += spec.nbytes
        if not chunk:
            out[spec.name] = torch.empty(spec.shape, dtype=dtype)
            continue
        out[spec.name] = _from_le(chunk, dtype, _SWAP_BYTES).reshape(spec.shape)
    return out


def encode_tensor(name: str, t: Tensor) -> tuple[WeightSpec, bytes]:
    """Serialize a state-dict tensor as little-endian float32 or int32."""
    flat = t.detach().cpu().reshape(-1)
    if t.dtype.is_floating_point:
        dtype = "float32"
        data = struct.pack(f"<{flat.numel()}f", *flat.to(torch.float32).tolist())
    elif t.dtype in (torch.int32, torch.int64):
        dtype = "int32"
        data = struct.pack(f"<{flat.numel()}i", *flat.to(torch.int32).tolist())
    else:
        raise ValueError(f"cannot encode dtype {t.dtype} for weight {name}")
    return WeightSpec(name=name, shape=tuple(int(n) for n in t.shape), dtype=dtype), data


def _from_le(chunk: bytearray, dtype: torch.dtype, swap: bool) -> Tensor:
    if not swap:
        return torch.frombuffer(chunk, dtype=dtype)
    words = torch.frombuffer(chunk, dtype=torch.uint8).reshape(-1, 4)
    return words.flip(1).contiguous().view(dtype).reshape(-1)
