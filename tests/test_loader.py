from __future__ import annotations

import json
from pathlib import Path

import httpx
import pytest
import torch
from _fakes import DirServer, export_tiny_model

from cifar_ai.inference.fetch import ArtifactFetcher, FetchError, resolve
from cifar_ai.inference.loader import (
    ModelLoadError,
    fresh_state_dict,
    load_from_source,
    load_model,
)

PRIMARY = "https://pages.example/mtech/"
FALLBACK = "https://raw.example/mtech/main/"


def test_export_writes_sharded_layout(tmp_path: Path) -> None:
    out = export_tiny_model(tmp_path / "m", shard_bytes=100_000)
    doc = json.loads((out / "model.json").read_text(encoding="utf-8"))
    paths = doc["weightsManifest"][0]["paths"]
    assert len(paths) > 1
    assert paths[0] == f"group1-shard1of{len(paths)}.bin"
    sizes = [(out / p).stat().st_size for p in paths]
    assert all(s <= 100_000 for s in sizes)
    specs = doc["weightsManifest"][0]["weights"]
    expected = sum(4 * int(torch.tensor(w["shape"]).prod()) for w in specs)
    assert sum(sizes) == expected


def test_load_from_local_directory_reproduces_weights(tmp_path: Path) -> None:
    out = export_tiny_model(tmp_path / "m")
    with ArtifactFetcher() as fetcher:
        loaded = load_from_source(out.as_posix(), fetcher)
    assert loaded.model_id == "tiny"
    original = fresh_state_dict("cifar_cnn", 10, seed=1)
    got = loaded.model.state_dict()
    assert set(got) == set(original)
    for k, v in original.items():
        assert torch.equal(got[k], v)


def test_load_over_http_fetches_every_shard_without_cache(tmp_path: Path) -> None:
    out = export_tiny_model(tmp_path / "m")
    server = DirServer({PRIMARY: out})
    with ArtifactFetcher(transport=server.transport) as fetcher:
        loaded = load_model([PRIMARY], fetcher)
    n_shards = len(loaded.descriptor.weight_groups[0].paths)
    urls = server.urls()
    assert urls[0] == PRIMARY + "model.json"
    assert len(urls) == 1 + n_shards
    assert all(r.headers.get("cache-control") == "no-store" for r in server.requests)


def test_failing_primary_falls_back_silently(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    out = export_tiny_model(tmp_path / "m")
    server = DirServer({FALLBACK: out}, failing=[PRIMARY])
    with ArtifactFetcher(transport=server.transport) as fetcher:
        loaded = load_model([PRIMARY, FALLBACK], fetcher)
    assert loaded.source == FALLBACK
    assert server.urls()[0] == PRIMARY + "model.json"
    assert not [r for r in caplog.records if r.levelname == "ERROR"]


def test_all_sources_failing_raises(tmp_path: Path) -> None:
    server = DirServer({}, failing=[PRIMARY])
    with ArtifactFetcher(transport=server.transport) as fetcher:
        with pytest.raises(ModelLoadError) as ei:
            load_model([PRIMARY, FALLBACK], fetcher)
    # Last failure is reported
    assert "404" in str(ei.value)


def test_missing_shard_fails_source(tmp_path: Path) -> None:
    out = export_tiny_model(tmp_path / "m")
    doc = json.loads((out / "model.json").read_text(encoding="utf-8"))
    (out / doc["weightsManifest"][0]["paths"][-1]).unlink()
    with ArtifactFetcher() as fetcher, pytest.raises(ModelLoadError):
        load_model([out.as_posix()], fetcher)


def test_weight_path_prefix_redirects_shards(tmp_path: Path) -> None:
    out = export_tiny_model(tmp_path / "m")
    weights = "https://cdn.example/weights/"
    server = DirServer({PRIMARY: out, weights: out})
    with ArtifactFetcher(transport=server.transport) as fetcher:
        load_model([PRIMARY], fetcher, weight_path_prefix=weights)
    shard_urls = server.urls()[1:]
    assert shard_urls and all(u.startswith(weights) for u in shard_urls)


def test_mismatched_architecture_rejected(tmp_path: Path) -> None:
    out = export_tiny_model(tmp_path / "m")
    doc = json.loads((out / "model.json").read_text(encoding="utf-8"))
    doc["weightsManifest"][0]["weights"][0]["name"] = "unexpected.weight"
    (out / "model.json").write_text(json.dumps(doc), encoding="utf-8")
    with ArtifactFetcher() as fetcher, pytest.raises(ValueError):
        load_from_source(out.as_posix(), fetcher)


def test_resolve_urls_and_paths() -> None:
    assert resolve("https://h.example/a/", "model.json") == "https://h.example/a/model.json"
    assert resolve("https://h.example/a", "x.bin") == "https://h.example/a/x.bin"
    assert resolve("https://h.example/a/", "https://o.example/y.bin") == "https://o.example/y.bin"
    assert resolve("models/cifar", "model.json") == "models/cifar/model.json"


def test_malformed_shard_url_falls_back_to_next_source(tmp_path: Path) -> None:
    bad = export_tiny_model(tmp_path / "bad")
    doc = json.loads((bad / "model.json").read_text(encoding="utf-8"))
    doc["weightsManifest"][0]["paths"][0] = "http://[::1/x.bin"
    (bad / "model.json").write_text(json.dumps(doc), encoding="utf-8")
    good = export_tiny_model(tmp_path / "good")
    server = DirServer({PRIMARY: bad, FALLBACK: good})
    with ArtifactFetcher(transport=server.transport) as fetcher:
        loaded = load_model([PRIMARY, FALLBACK], fetcher)
    assert loaded.source == FALLBACK


def test_fetch_accepts_any_2xx_and_rejects_invalid_url() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(203, content=b"abc")

    with ArtifactFetcher(transport=httpx.MockTransport(_handler)) as fetcher:
        assert fetcher.fetch_bytes("https://h.example/a.bin") == b"abc"
        with pytest.raises(FetchError):
            fetcher.fetch_bytes("http://[::1/x.bin")
