"""Core logic for aumai-imagemanifest."""

from __future__ import annotations

import gzip
import hashlib
import json
import logging
import posixpath
import tarfile
from collections.abc import Iterable, Iterator
from typing import IO, Any, NamedTuple

from pydantic import ValidationError

from .errors import (
    AmbiguousRootLayer,
    ArchiveIOError,
    CorruptArchive,
    InvalidChain,
    InvalidInput,
    MissingRootLayer,
)
from .models import (
    FSLayer,
    HistoryEntry,
    ImageManifest,
    LayerInfo,
    LayerRecord,
    ManifestConfig,
    RepositoryIdentity,
)
from .signing import SigningKey, load_signing_key, sign_manifest

__all__ = [
    "ArchiveEntry",
    "BlobDigest",
    "BuildResult",
    "LayerStore",
    "ManifestBuilder",
    "assemble_manifest",
    "classify_entry",
    "compute_blob_digest",
    "decode_layer_metadata",
    "layer_id_from_path",
    "manifest_bytes",
    "qualify_name",
    "reconstruct_chain",
    "render_manifest",
    "resolve_repository",
    "walk_archive",
]

logger = logging.getLogger(__name__)

ENTRY_BLOB = "blob"
ENTRY_METADATA = "metadata"
ENTRY_REPOSITORY = "repository"
ENTRY_IGNORED = "ignored"

_BLOB_FILENAME = "layer.tar"
_METADATA_FILENAME = "json"
_REPOSITORIES_FILENAME = "repositories"
_DEFAULT_NAMESPACE = "library/"
_DIGEST_ALGORITHM = "sha256"
_COMPRESS_LEVEL = 6
_CHUNK_SIZE = 65536
_MANIFEST_INDENT = 3


# ------------------------------------------------------------------
# Archive walking
# ------------------------------------------------------------------


class ArchiveEntry(NamedTuple):
    kind: str
    name: str
    layer_id: str
    stream: IO[bytes]


def layer_id_from_path(name: str) -> str:
    """Return the name of the directory holding *name*, or ``""``."""
    directory = posixpath.dirname(posixpath.normpath(name))
    layer_id = posixpath.basename(directory)
    return "" if layer_id in ("", ".", "..") else layer_id


def classify_entry(name: str) -> tuple[str, str]:
    """Return ``(kind, layer_id)`` for a tar member name."""
    path = posixpath.normpath(name)
    if path == _REPOSITORIES_FILENAME:
        return ENTRY_REPOSITORY, ""

    filename = posixpath.basename(path)
    if filename == _BLOB_FILENAME:
        kind = ENTRY_BLOB
    elif filename == _METADATA_FILENAME:
        kind = ENTRY_METADATA
    else:
        return ENTRY_IGNORED, ""

    layer_id = layer_id_from_path(name)
    if not layer_id:
        logger.warning("Ignoring %s: no layer directory in path", name)
        return ENTRY_IGNORED, ""
    return kind, layer_id


def walk_archive(fileobj: IO[bytes]) -> Iterator[ArchiveEntry]:
    """
    Stream the members of a saved image archive in archive order.

    Only blob, metadata and repository entries are yielded. Each entry's
    stream must be consumed before the next entry is requested; the
    archive is never seeked or buffered as a whole. Compressed exports
    are detected transparently.
    """
    try:
        with tarfile.open(fileobj=fileobj, mode="r|*") as tar:
            for member in tar:
                kind, layer_id = classify_entry(member.name)
                if kind == ENTRY_IGNORED:
                    continue
                if not member.isfile():
                    logger.warning("Skipping %s: not a regular file", member.name)
                    continue
                stream = tar.extractfile(member)
                if stream is None:
                    continue
                yield ArchiveEntry(kind, member.name, layer_id, stream)
    except (tarfile.TarError, EOFError) as exc:
        raise CorruptArchive(f"Malformed archive: {exc}") from exc
    except OSError as exc:
        raise ArchiveIOError(f"Failed to read archive: {exc}") from exc


# ------------------------------------------------------------------
# Blob digests
# ------------------------------------------------------------------


class BlobDigest(NamedTuple):
    hexdigest: str
    size: int   # bytes of compressed output

    @property
    def digest(self) -> str:
        return f"{_DIGEST_ALGORITHM}:{self.hexdigest}"


class _HashingSink:
    """Write-only file object that hashes and counts what it receives."""

    def __init__(self) -> None:
        self._hash = hashlib.new(_DIGEST_ALGORITHM)
        self.size = 0

    def write(self, data: bytes) -> int:
        self._hash.update(data)
        self.size += len(data)
        return len(data)

    def flush(self) -> None:
        pass

    def hexdigest(self) -> str:
        return self._hash.hexdigest()


def compute_blob_digest(stream: IO[bytes]) -> BlobDigest:
    """
    Digest a layer blob the way a registry addresses it.

    The uncompressed ``layer.tar`` bytes are gzip-compressed (fixed mtime,
    no embedded filename) and the sha256 is taken over the compressed
    output, so equal input always yields an equal digest.
    """
    sink = _HashingSink()
    try:
        with gzip.GzipFile(
            filename="",
            mode="wb",
            fileobj=sink,
            compresslevel=_COMPRESS_LEVEL,
            mtime=0,
        ) as gz:
            for chunk in iter(lambda: stream.read(_CHUNK_SIZE), b""):
                gz.write(chunk)
    except OSError as exc:
        raise ArchiveIOError(f"Failed to read layer blob: {exc}") from exc
    return BlobDigest(hexdigest=sink.hexdigest(), size=sink.size)


# ------------------------------------------------------------------
# Layer records
# ------------------------------------------------------------------


def decode_layer_metadata(data: bytes) -> tuple[LayerInfo, str]:
    """
    Parse a layer ``json`` entry.

    Returns the typed id/parent pair and the metadata re-serialised in
    compact form with sorted keys.
    """
    try:
        raw = json.loads(data)
    except (ValueError, RecursionError) as exc:
        raise InvalidInput(f"layer metadata is not valid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise InvalidInput("layer metadata is not a JSON object")
    try:
        info = LayerInfo.model_validate(raw)
    except ValidationError as exc:
        fields = ", ".join(str(err["loc"][0]) for err in exc.errors() if err["loc"])
        raise InvalidInput(f"layer metadata has no usable {fields or 'id'}") from exc
    compact = json.dumps(raw, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return info, compact


class LayerStore:
    """
    Layer records keyed by id, filled in as entries arrive in any order.

    A field that is already set is never cleared by an empty value. A
    conflicting non-empty value raises ``InvalidInput`` in strict mode and
    replaces the old value (with a warning) otherwise.
    """

    _FIELDS = frozenset({"parent_id", "blob_digest", "blob_size", "metadata_json"})

    def __init__(self, strict: bool = True) -> None:
        self.strict = strict
        self._records: dict[str, LayerRecord] = {}

    def merge(self, layer_id: str, **fields: Any) -> LayerRecord:
        if not layer_id:
            raise InvalidInput("layer id must not be empty")
        unknown = set(fields) - self._FIELDS
        if unknown:
            raise TypeError(f"unknown layer fields: {', '.join(sorted(unknown))}")

        record = self._records.get(layer_id)
        if record is None:
            record = LayerRecord(id=layer_id)
            self._records[layer_id] = record

        for name, value in fields.items():
            if not value:
                continue
            current = getattr(record, name)
            if current and current != value:
                message = f"conflicting {name} for layer {layer_id}: {current!r} != {value!r}"
                if self.strict:
                    raise InvalidInput(message)
                logger.warning(message)
            setattr(record, name, value)
        return record

    def get(self, layer_id: str) -> LayerRecord | None:
        return self._records.get(layer_id)

    def all(self) -> list[LayerRecord]:
        return list(self._records.values())

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, layer_id: object) -> bool:
        return layer_id in self._records


# ------------------------------------------------------------------
# Chain reconstruction
# ------------------------------------------------------------------


def reconstruct_chain(
    records: Iterable[LayerRecord], strict: bool = True
) -> list[LayerRecord]:
    """
    Order *records* from the base layer to the topmost layer.

    Exactly one record may lack a parent. Records without layer metadata
    cannot be placed and raise ``InvalidInput`` in strict mode. In strict
    mode any record not on the single path from the root, or any layer with
    two children, raises ``InvalidChain``. In lenient mode all of these are
    logged and dropped.
    """
    records = list(records)
    unplaceable = sorted(r.id for r in records if not r.metadata_json)
    if unplaceable:
        message = f"no usable json entry for layer(s): {', '.join(unplaceable)}"
        if strict:
            raise InvalidInput(message)
        logger.warning("dropping %s", message)
        records = [r for r in records if r.metadata_json]

    roots = sorted((r for r in records if not r.parent_id), key=lambda r: r.id)
    if not roots:
        raise MissingRootLayer("unable to find root layer")
    if len(roots) > 1:
        raise AmbiguousRootLayer(
            f"found {len(roots)} root layers: {', '.join(r.id for r in roots)}"
        )

    children: dict[str, list[LayerRecord]] = {}
    for record in records:
        if record.parent_id:
            children.setdefault(record.parent_id, []).append(record)

    chain = [roots[0]]
    while True:
        candidates = sorted(children.get(chain[-1].id, []), key=lambda r: r.id)
        if not candidates:
            break
        if len(candidates) > 1:
            message = (
                f"layer {chain[-1].id} has {len(candidates)} children: "
                f"{', '.join(r.id for r in candidates)}"
            )
            if strict:
                raise InvalidChain(message)
            logger.warning("%s; following %s", message, candidates[0].id)
        chain.append(candidates[0])

    if len(chain) < len(records):
        reached = {r.id for r in chain}
        dropped = sorted(r.id for r in records if r.id not in reached)
        message = (
            f"{len(dropped)} layer(s) unreachable from root {roots[0].id}: "
            f"{', '.join(dropped)}"
        )
        if strict:
            raise InvalidChain(message)
        logger.warning("dropping %s", message)

    return chain


# ------------------------------------------------------------------
# Repository index
# ------------------------------------------------------------------


def qualify_name(name: str) -> str:
    """Prefix unqualified repository names with the default namespace."""
    if not name or "/" in name:
        return name
    return _DEFAULT_NAMESPACE + name


def resolve_repository(data: bytes) -> RepositoryIdentity:
    """
    Read ``(name, tag)`` from the ``repositories`` entry.

    The entry maps a repository name to a mapping of tag to layer id. Any
    other shape yields an empty identity.
    """
    try:
        index = json.loads(data)
    except (ValueError, RecursionError) as exc:
        logger.warning("Ignoring malformed repositories entry: %s", exc)
        return RepositoryIdentity()

    if not isinstance(index, dict) or not index:
        logger.warning("Ignoring repositories entry: expected a non-empty object")
        return RepositoryIdentity()

    names = sorted(index)
    if len(names) > 1:
        logger.warning("Archive names %d repositories, using %s", len(names), names[0])
    tags = index[names[0]]
    if not isinstance(tags, dict) or not tags:
        logger.warning("Ignoring repositories entry: no tags for %s", names[0])
        return RepositoryIdentity()

    tag_names = sorted(tags)
    if len(tag_names) > 1:
        logger.warning("Repository %s has %d tags, using %s", names[0], len(tag_names), tag_names[0])
    return RepositoryIdentity(name=qualify_name(names[0]), tag=tag_names[0])


# ------------------------------------------------------------------
# Manifest assembly
# ------------------------------------------------------------------


def assemble_manifest(
    identity: RepositoryIdentity,
    chain: list[LayerRecord],
    architecture: str = "amd64",
    strict: bool = True,
) -> ImageManifest:
    """Build the manifest from a base-first *chain*, listing the top layer first."""
    fs_layers: list[FSLayer] = []
    history: list[HistoryEntry] = []
    for record in reversed(chain):
        missing = [
            label
            for label, value in (("layer.tar", record.blob_digest), ("json", record.metadata_json))
            if not value
        ]
        if missing:
            message = f"layer {record.id} has no {' or '.join(missing)} entry"
            if strict:
                raise InvalidInput(message)
            logger.warning(message)
        fs_layers.append(FSLayer(blob_sum=record.blob_digest))
        history.append(HistoryEntry(v1_compatibility=record.metadata_json + "\n"))

    return ImageManifest(
        name=identity.name,
        tag=identity.tag,
        architecture=architecture,
        fs_layers=fs_layers,
        history=history,
    )


def manifest_bytes(manifest: ImageManifest) -> bytes:
    """Return the indented JSON encoding used both for output and for signing."""
    document = manifest.model_dump(by_alias=True)
    return json.dumps(document, indent=_MANIFEST_INDENT, ensure_ascii=False).encode("utf-8")


def render_manifest(manifest: ImageManifest, key: SigningKey | None = None) -> str:
    """Encode *manifest*, wrapped in a signature envelope when *key* is given."""
    payload = manifest_bytes(manifest)
    if key is None:
        return payload.decode("utf-8")
    return sign_manifest(payload, key).decode("utf-8")


# ------------------------------------------------------------------
# Pipeline
# ------------------------------------------------------------------


class BuildResult(NamedTuple):
    manifest: ImageManifest
    chain: list[LayerRecord]          # base layer first
    identity: RepositoryIdentity


class ManifestBuilder:
    """
    Produces the manifest for one saved image archive.

    The archive is read in a single streaming pass; the file handle is
    closed on every exit path.
    """

    def __init__(self, config: ManifestConfig) -> None:
        self.config = config

    def build(self) -> BuildResult:
        path = self.config.archive_path
        store = LayerStore(strict=self.config.strict)
        identity = RepositoryIdentity()

        logger.debug("Reading archive %s", path)
        try:
            fh = open(path, "rb")
        except OSError as exc:
            raise ArchiveIOError(f"cannot open archive {str(path)!r}: {exc.strerror or exc}") from exc

        with fh:
            for entry in walk_archive(fh):
                resolved = self._consume(entry, store)
                if resolved is not None:
                    identity = resolved

        logger.debug("Collected %d layer record(s)", len(store))
        chain = reconstruct_chain(store.all(), strict=self.config.strict)
        manifest = assemble_manifest(
            identity, chain, self.config.architecture, strict=self.config.strict
        )
        return BuildResult(manifest=manifest, chain=chain, identity=identity)

    def render(self) -> str:
        """Build and encode the manifest, signing it when a key is configured."""
        key = None
        if self.config.key_path is not None:
            key = load_signing_key(self.config.key_path)
        result = self.build()
        return render_manifest(result.manifest, key)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _consume(self, entry: ArchiveEntry, store: LayerStore) -> RepositoryIdentity | None:
        try:
            if entry.kind == ENTRY_BLOB:
                blob = compute_blob_digest(entry.stream)
                logger.debug("Layer %s: %s (%d bytes compressed)", entry.layer_id, blob.digest, blob.size)
                store.merge(entry.layer_id, blob_digest=blob.digest, blob_size=blob.size)
            elif entry.kind == ENTRY_METADATA:
                self._merge_metadata(entry, entry.stream.read(), store)
            elif entry.kind == ENTRY_REPOSITORY:
                identity = resolve_repository(entry.stream.read())
                logger.debug("Repository %s:%s", identity.name, identity.tag)
                return identity
        except (tarfile.TarError, EOFError) as exc:
            raise CorruptArchive(f"malformed archive entry {entry.name!r}: {exc}") from exc
        except OSError as exc:
            raise ArchiveIOError(f"failed to read {entry.name!r}: {exc}") from exc
        return None

    def _merge_metadata(self, entry: ArchiveEntry, data: bytes, store: LayerStore) -> None:
        try:
            info, metadata_json = decode_layer_metadata(data)
        except InvalidInput as exc:
            logger.warning("Ignoring %s: %s", entry.name, exc)
            return
        if info.id != entry.layer_id:
            logger.warning("%s declares id %s, merging on the declared id", entry.name, info.id)
        store.merge(info.id, parent_id=info.parent, metadata_json=metadata_json)
