from __future__ import annotations

import json
import struct
import sys
from collections.abc import Callable

import pytest
import torch

from cifar_ai.inference import manifest
from cifar_ai.inference.manifest import ModelDescriptor, WeightGroup, WeightSpec, decode_group


def _valid() -> dict[str, object]:
    return {
        "format": "layers-model",
        "generatedBy": "cifar-ai",
        "modelTopology": {"model_id": "cifar_cnn_v1", "arch": "cifar_cnn", "n_classes": 10},
        "weightsManifest": [
            {
                "paths": ["group1-shard1of2.bin", "group1-shard2of2.bin"],
                "weights": [
                    {"name": "w", "shape": [2, 3], "dtype": "float32"},
                    {"name": "n", "shape": [], "dtype": "int32"},
                ],
            }
        ],
    }


def test_descriptor_from_dict_valid() -> None:
    d = ModelDescriptor.from_dict(_valid())
    assert d.model_id == "cifar_cnn_v1"
    assert d.topology.input_size == 32
    group = d.weight_groups[0]
    assert group.paths == ("group1-shard1of2.bin", "group1-shard2of2.bin")
    assert group.nbytes == 2 * 3 * 4 + 4


def test_descriptor_json_roundtrip_keeps_fields() -> None:
    d = ModelDescriptor.from_dict(_valid())
    again = ModelDescriptor.from_json(json.dumps(d.to_dict()))
    assert again == d


@pytest.mark.parametrize(
    "mutate",
    [
        lambda d: d.update(format="graph-model"),
        lambda d: d.update(modelTopology={"arch": "cifar_cnn"}),
        lambda d: d.update(modelTopology={"model_id": "m", "arch": "vgg"}),
        lambda d: d.update(modelTopology={"model_id": "m", "arch": "cifar_cnn", "n_classes": 100}),
        lambda d: d.update(weightsManifest=[]),
        lambda d: d.update(
            weightsManifest=[
                {"paths": ["a"], "weights": [{"name": "w", "shape": [1], "dtype": "f16"}]}
            ]
        ),
        lambda d: d.update(
            weightsManifest=[
                {"paths": ["a"], "weights": [{"name": "w", "shape": [1]}]},
                {"paths": ["b"], "weights": [{"name": "w", "shape": [1]}]},
            ]
        ),
    ],
)
def test_descriptor_invalid_raises(mutate: Callable[[dict[str, object]], None]) -> None:
    d = _valid()
    mutate(d)
    with pytest.raises(ValueError):
        ModelDescriptor.from_dict(d)


def test_descriptor_from_json_rejects_non_object() -> None:
    with pytest.raises(ValueError):
        ModelDescriptor.from_json("[1, 2]")
    with pytest.raises(ValueError):
        ModelDescriptor.from_json("{not json")


def test_decode_group_slices_tensors_in_order() -> None:
    group = WeightGroup(
        paths=("a",),
        weights=(
            WeightSpec(name="w", shape=(2, 2), dtype="float32"),
            WeightSpec(name="n", shape=(1,), dtype="int32"),
        ),
    )
    buf = struct.pack("<4f", 1.0, 2.0, 3.0, 4.5) + struct.pack("<i", 7)
    out = decode_group(group, buf)
    assert torch.equal(out["w"], torch.tensor([[1.0, 2.0], [3.0, 4.5]]))
    assert out["n"].dtype == torch.int32 and int(out["n"][0]) == 7


def test_decode_group_length_mismatch_raises() -> None:
    group = WeightGroup(paths=("a",), weights=(WeightSpec(name="w", shape=(3,), dtype="float32"),))
    with pytest.raises(ValueError):
        decode_group(group, b"\x00" * 8)


@pytest.mark.skipif(sys.byteorder != "little", reason="simulates a big-endian host")
def test_decode_group_swaps_words_on_big_endian_host(monkeypatch: pytest.MonkeyPatch) -> None:
    # With swapping on, a little-endian host must read big-endian words back correctly
    monkeypatch.setattr(manifest, "_SWAP_BYTES", True)
    group = WeightGroup(
        paths=("a",),
        weights=(
            WeightSpec(name="w", shape=(2,), dtype="float32"),
            WeightSpec(name="n", shape=(1,), dtype="int32"),
        ),
    )
    buf = struct.pack(">2f", 1.5, -2.0) + struct.pack(">i", 258)
    out = decode_group(group, buf)
    assert torch.equal(out["w"], torch.tensor([1.5, -2.0]))
    assert int(out["n"][0]) == 258
