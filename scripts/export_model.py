from __future__ import annotations

import argparse
from dataclasses import dataclass
from pathlib import Path

import torch
from torch import Tensor

from cifar_ai.inference.loader import export_model, fresh_state_dict
from cifar_ai.inference.manifest import SUPPORTED_ARCHS, ModelTopology
from cifar_ai.labels import N_CLASSES
from cifar_ai.version import _DIST_NAME


@dataclass(frozen=True)
class ExportArgs:
    model_id: str
    arch: str
    state_dict: Path | None
    out_dir: Path
    shard_mb: float
    seed: int


def parse_args(argv: list[str] | None = None) -> ExportArgs:
    ap = argparse.ArgumentParser(description="Write a model.json plus weight shards")
    ap.add_argument("--model-id", required=True, help="Id recorded in modelTopology")
    ap.add_argument("--arch", default="cifar_cnn", choices=SUPPORTED_ARCHS)
    ap.add_argument("--state-dict", default=None, help="Torch state dict (.pt); random if omitted")
    ap.add_argument("--out-dir", default="./artifacts/model", help="Destination directory")
    ap.add_argument("--shard-mb", type=float, default=4.0, help="Maximum shard size in MiB")
    ap.add_argument("--seed", type=int, default=0, help="Seed for random initialization")
    a = ap.parse_args(argv)
    if float(a.shard_mb) <= 0:
        ap.error("--shard-mb must be > 0")
    return ExportArgs(
        model_id=str(a.model_id),
        arch=str(a.arch),
        state_dict=Path(str(a.state_dict)) if a.state_dict else None,
        out_dir=Path(str(a.out_dir)),
        shard_mb=float(a.shard_mb),
        seed=int(a.seed),
    )


def _load_state_dict(path: Path) -> dict[str, Tensor]:
    if not path.exists():
        raise SystemExit(f"State dict not found: {path.as_posix()}")
    obj = torch.load(path.as_posix(), map_location=torch.device("cpu"), weights_only=True)
    sd_obj = obj["state_dict"] if isinstance(obj, dict) and "state_dict" in obj else obj
    if not isinstance(sd_obj, dict):
        raise SystemExit("state dict file did not contain a dict")
    out: dict[str, Tensor] = {}
    for k, v in sd_obj.items():
        if not (isinstance(k, str) and torch.is_tensor(v)):
            raise SystemExit("invalid state dict entry")
        out[k] = v
    return out


def run_export(args: ExportArgs) -> Path:
    if args.state_dict is not None:
        sd = _load_state_dict(args.state_dict)
    else:
        sd = fresh_state_dict(args.arch, N_CLASSES, seed=args.seed)
    topology = ModelTopology(model_id=args.model_id, arch=args.arch)
    export_model(
        sd,
        topology,
        args.out_dir,
        shard_bytes=int(args.shard_mb * 1024 * 1024),
        generated_by=_DIST_NAME,
    )
    return args.out_dir / "model.json"


def main(argv: list[str] | None = None) -> None:  # pragma: no cover - tiny glue
    from cifar_ai.logging import init_logging

    init_logging()
    run_export(parse_args(argv))


if __name__ == "__main__":
    main()
