"""Shared test fixtures for aumai-imagemanifest."""

from __future__ import annotations

import io
import json
import tarfile
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from aumai_imagemanifest.models import LayerRecord, ManifestConfig


# ---------------------------------------------------------------------------
# Archive building helpers
# ---------------------------------------------------------------------------


def layer_blob(label: str) -> bytes:
    """A small nested tar standing in for a layer's filesystem changes."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        data = f"contents of {label}\n".encode("utf-8") * 32
        info = tarfile.TarInfo(name=f"etc/{label}.conf")
        info.size = len(data)
        tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def layer_metadata(layer_id: str, parent: str | None = None, **extra: Any) -> bytes:
    doc: dict[str, Any] = {
        "id": layer_id,
        "created": "2015-03-01T12:00:00Z",
        "container_config": {"Cmd": [f"/bin/sh -c #(nop) LABEL layer={layer_id}"]},
        "architecture": "amd64",
        "os": "linux",
    }
    if parent is not None:
        doc["parent"] = parent
    doc.update(extra)
    return json.dumps(doc, indent=2).encode("utf-8")


def _add_bytes(tar: tarfile.TarFile, name: str, data: bytes) -> None:
    info = tarfile.TarInfo(name=name)
    info.size = len(data)
    info.mtime = 1425211200
    tar.addfile(info, io.BytesIO(data))


def write_image_archive(
    path: Path,
    layers: Sequence[dict[str, Any]],
    repositories: Any = None,
    metadata_first: bool = False,
    mode: str = "w",
) -> Path:
    """
    Write a ``docker save`` style archive.

    Each layer dict carries ``id``, optional ``parent`` and optional
    ``blob`` / ``metadata`` bytes (``None`` omits the entry).
    """
    with tarfile.open(path, mode) as tar:
        for layer in layers:
            layer_id = layer["id"]
            directory = tarfile.TarInfo(name=f"{layer_id}/")
            directory.type = tarfile.DIRTYPE
            tar.addfile(directory)
            _add_bytes(tar, f"{layer_id}/VERSION", b"1.0")

            blob = layer.get("blob", layer_blob(layer_id))
            metadata = layer.get("metadata", layer_metadata(layer_id, layer.get("parent")))
            entries = [(f"{layer_id}/layer.tar", blob), (f"{layer_id}/json", metadata)]
            if metadata_first:
                entries.reverse()
            for name, data in entries:
                if data is not None:
                    _add_bytes(tar, name, data)

        if repositories is not None:
            if not isinstance(repositories, bytes):
                repositories = json.dumps(repositories).encode("utf-8")
            _add_bytes(tar, "repositories", repositories)
    return path


THREE_LAYERS = [
    {"id": "aaaa1111", "parent": None},
    {"id": "bbbb2222", "parent": "aaaa1111"},
    {"id": "cccc3333", "parent": "bbbb2222"},
]


# ---------------------------------------------------------------------------
# Archive fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def make_archive(tmp_path: Path) -> Callable[..., Path]:
    counter = iter(range(1000))

    def _make(layers: Sequence[dict[str, Any]], **kwargs: Any) -> Path:
        name = kwargs.pop("filename", f"image-{next(counter)}.tar")
        return write_image_archive(tmp_path / name, layers, **kwargs)

    return _make


@pytest.fixture()
def image_archive(make_archive: Callable[..., Path]) -> Path:
    """Three-layer busybox export tagged ``latest``."""
    return make_archive(
        THREE_LAYERS,
        repositories={"busybox": {"latest": "cccc3333"}},
    )


@pytest.fixture()
def empty_archive(tmp_path: Path) -> Path:
    path = tmp_path / "empty.tar"
    with tarfile.open(path, "w"):
        pass
    return path


@pytest.fixture()
def image_config(image_archive: Path) -> ManifestConfig:
    return ManifestConfig(archive_path=image_archive)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@pytest.fixture()
def chain_records() -> list[LayerRecord]:
    """Records A <- B <- C with digests d1, d2, d3."""
    return [
        LayerRecord(id="A", parent_id="", blob_digest="d1", metadata_json='{"id":"A"}'),
        LayerRecord(id="B", parent_id="A", blob_digest="d2", metadata_json='{"id":"B","parent":"A"}'),
        LayerRecord(id="C", parent_id="B", blob_digest="d3", metadata_json='{"id":"C","parent":"B"}'),
    ]


# ---------------------------------------------------------------------------
# Signing keys
# ---------------------------------------------------------------------------


def _write_key(path: Path, key: Any, password: bytes | None = None) -> Path:
    encryption = (
        serialization.BestAvailableEncryption(password)
        if password
        else serialization.NoEncryption()
    )
    path.write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            encryption,
        )
    )
    return path


@pytest.fixture()
def ec_key_path(tmp_path: Path) -> Path:
    return _write_key(tmp_path / "ec.pem", ec.generate_private_key(ec.SECP256R1()))


@pytest.fixture()
def ec384_key_path(tmp_path: Path) -> Path:
    return _write_key(tmp_path / "ec384.pem", ec.generate_private_key(ec.SECP384R1()))


@pytest.fixture()
def rsa_key_path(tmp_path: Path) -> Path:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return _write_key(tmp_path / "rsa.pem", key)


@pytest.fixture()
def encrypted_key_path(tmp_path: Path) -> Path:
    key = ec.generate_private_key(ec.SECP256R1())
    return _write_key(tmp_path / "encrypted.pem", key, password=b"hunter2")
