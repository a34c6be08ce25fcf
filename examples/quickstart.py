"""
aumai-imagemanifest quickstart — build, inspect, sign and verify a manifest.

Run directly:

    python examples/quickstart.py

All demos use a temporary directory and clean up after themselves.
"""

from __future__ import annotations

import io
import json
import pathlib
import tarfile
import tempfile


# ---------------------------------------------------------------------------
# Demo 1: Write a saved-image archive
# ---------------------------------------------------------------------------

def _add(tar: tarfile.TarFile, name: str, data: bytes) -> None:
    info = tarfile.TarInfo(name=name)
    info.size = len(data)
    tar.addfile(info, io.BytesIO(data))


def demo_write_archive(workdir: pathlib.Path) -> pathlib.Path:
    """Create a two-layer archive laid out like ``docker save`` output."""
    print("\n=== Demo 1: Write a saved-image archive ===")

    archive = workdir / "hello.tar"
    layers = [("base0001", None), ("app00002", "base0001")]
    with tarfile.open(archive, "w") as tar:
        for layer_id, parent in layers:
            blob = io.BytesIO()
            with tarfile.open(fileobj=blob, mode="w") as layer_tar:
                _add(layer_tar, f"srv/{layer_id}.txt", f"hello from {layer_id}\n".encode())
            metadata = {"id": layer_id, "os": "linux"}
            if parent:
                metadata["parent"] = parent
            _add(tar, f"{layer_id}/layer.tar", blob.getvalue())
            _add(tar, f"{layer_id}/json", json.dumps(metadata).encode())
        _add(tar, "repositories", json.dumps({"hello": {"latest": "app00002"}}).encode())

    print(f"  Archive : {archive}")
    print(f"  Size    : {archive.stat().st_size:,} bytes")
    return archive


# ---------------------------------------------------------------------------
# Demo 2: Build the manifest
# ---------------------------------------------------------------------------

def demo_build_manifest(archive: pathlib.Path) -> None:
    """Walk the archive and print the resulting chain and manifest."""
    print("\n=== Demo 2: Build the manifest ===")

    from aumai_imagemanifest.core import ManifestBuilder, render_manifest
    from aumai_imagemanifest.models import ManifestConfig

    result = ManifestBuilder(ManifestConfig(archive_path=archive)).build()
    print(f"  Image   : {result.identity.name}:{result.identity.tag}")
    print(f"  Chain   : {' -> '.join(r.id for r in result.chain)}")
    for line in render_manifest(result.manifest).splitlines()[:12]:
        print(f"    {line}")
    print("    ...")


# ---------------------------------------------------------------------------
# Demo 3: Sign and verify
# ---------------------------------------------------------------------------

def demo_sign_and_verify(archive: pathlib.Path, workdir: pathlib.Path) -> None:
    """Sign with a fresh P-256 key and check the signature."""
    print("\n=== Demo 3: Sign and verify ===")

    from cryptography.hazmat.primitives import serialization
    from cryptography.hazmat.primitives.asymmetric import ec

    from aumai_imagemanifest.core import ManifestBuilder
    from aumai_imagemanifest.models import ManifestConfig
    from aumai_imagemanifest.signing import verify_signed_manifest

    key_path = workdir / "signing.pem"
    key_path.write_bytes(
        ec.generate_private_key(ec.SECP256R1()).private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )

    config = ManifestConfig(archive_path=archive, key_path=key_path)
    signed = ManifestBuilder(config).render()
    signature = json.loads(signed)["signatures"][0]
    print(f"  Algorithm : {signature['header']['alg']}")
    print(f"  Key id    : {signature['header']['jwk']['kid']}")

    payload = verify_signed_manifest(signed.encode("utf-8"))
    print(f"  Verified  : {len(payload):,} payload bytes")


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main() -> None:
    print("aumai-imagemanifest quickstart demo")
    print("=" * 40)

    with tempfile.TemporaryDirectory() as tmp:
        workdir = pathlib.Path(tmp)
        archive = demo_write_archive(workdir)
        demo_build_manifest(archive)
        demo_sign_and_verify(archive, workdir)

    print("\n" + "=" * 40)
    print("All demos completed successfully.")


if __name__ == "__main__":
    main()
