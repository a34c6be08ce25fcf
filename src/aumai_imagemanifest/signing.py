"""
Manifest signing.

Signed manifests use the JSON signature layout registries expect for
schema version 1: the payload is the indented manifest itself, and a
``signatures`` array is spliced in before its closing brace. Each
signature is a JWS over ``base64url(protected) + "." + base64url(payload)``
whose protected header records how to cut the payload back out of the
signed document (``formatLength`` and ``formatTail``).
"""

from __future__ import annotations

import base64
import datetime
import hashlib
import json
import logging
from pathlib import Path
from typing import Any, Union

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import (
    decode_dss_signature,
    encode_dss_signature,
)

from .errors import KeyLoadError, SignatureVerificationError, SigningError

__all__ = [
    "SigningKey",
    "key_id",
    "load_signing_key",
    "public_jwk",
    "sign_manifest",
    "verify_signed_manifest",
]

logger = logging.getLogger(__name__)

SigningKey = Union[ec.EllipticCurvePrivateKey, rsa.RSAPrivateKey]
PublicKey = Union[ec.EllipticCurvePublicKey, rsa.RSAPublicKey]

# curve name -> (JWK crv, JWS alg, hash)
_EC_ALGORITHMS: dict[str, tuple[str, str, type[hashes.HashAlgorithm]]] = {
    "secp256r1": ("P-256", "ES256", hashes.SHA256),
    "secp384r1": ("P-384", "ES384", hashes.SHA384),
    "secp521r1": ("P-521", "ES512", hashes.SHA512),
}
_EC_CURVES: dict[str, type[ec.EllipticCurve]] = {
    "P-256": ec.SECP256R1,
    "P-384": ec.SECP384R1,
    "P-521": ec.SECP521R1,
}
_RSA_ALGORITHM = "RS256"
_TIME_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def _int_bytes(value: int, size: int | None = None) -> bytes:
    if size is None:
        size = max(1, (value.bit_length() + 7) // 8)
    return value.to_bytes(size, "big")


def _coordinate_size(curve: ec.EllipticCurve) -> int:
    return (curve.key_size + 7) // 8


# ------------------------------------------------------------------
# Keys
# ------------------------------------------------------------------


def load_signing_key(path: str | Path) -> SigningKey:
    """
    Load an unencrypted PEM private key.

    EC keys on P-256, P-384 or P-521 and RSA keys are accepted.
    """
    try:
        with open(path, "rb") as fh:
            pem = fh.read()
    except OSError as exc:
        raise KeyLoadError(f"cannot read signing key {str(path)!r}: {exc.strerror or exc}") from exc

    try:
        key = serialization.load_pem_private_key(pem, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise KeyLoadError(f"cannot load signing key {str(path)!r}: {exc}") from exc

    if isinstance(key, ec.EllipticCurvePrivateKey):
        if key.curve.name not in _EC_ALGORITHMS:
            raise KeyLoadError(f"unsupported curve {key.curve.name} in {str(path)!r}")
    elif not isinstance(key, rsa.RSAPrivateKey):
        raise KeyLoadError(f"{str(path)!r} is not an EC or RSA private key")
    logger.debug("Loaded signing key %s", key_id(key.public_key()))
    return key


def key_id(public_key: PublicKey) -> str:
    """
    Return the key fingerprint: the first 240 bits of the sha256 of the
    DER public key, base32 encoded, in colon-separated groups of four.
    """
    der = public_key.public_bytes(
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    encoded = base64.b32encode(hashlib.sha256(der).digest()[:30]).decode("ascii")
    return ":".join(encoded[i:i + 4] for i in range(0, len(encoded), 4))


def public_jwk(public_key: PublicKey) -> dict[str, str]:
    """JSON Web Key for *public_key*, keys in sorted order."""
    kid = key_id(public_key)
    if isinstance(public_key, ec.EllipticCurvePublicKey):
        numbers = public_key.public_numbers()
        crv = _EC_ALGORITHMS[public_key.curve.name][0]
        size = _coordinate_size(public_key.curve)
        return {
            "crv": crv,
            "kid": kid,
            "kty": "EC",
            "x": _b64url(_int_bytes(numbers.x, size)),
            "y": _b64url(_int_bytes(numbers.y, size)),
        }
    numbers = public_key.public_numbers()
    return {
        "e": _b64url(_int_bytes(numbers.e)),
        "kid": kid,
        "kty": "RSA",
        "n": _b64url(_int_bytes(numbers.n)),
    }


# ------------------------------------------------------------------
# Signing
# ------------------------------------------------------------------


def _split_payload(content: bytes) -> tuple[int, bytes]:
    """Return the length of *content* up to its closing brace, and the rest."""
    stripped = content.rstrip()
    if not stripped.endswith(b"}"):
        raise SigningError("manifest payload is not a JSON object")
    body = stripped[:-1].rstrip()
    if body.endswith(b","):
        raise SigningError("manifest payload has a trailing comma")
    return len(body), content[len(body):]


def _detect_indent(content: bytes) -> str:
    lines = content.split(b"\n", 2)
    if len(lines) < 2:
        return ""
    second = lines[1]
    return second[: len(second) - len(second.lstrip(b" \t"))].decode("ascii")


def _sign_bytes(key: SigningKey, data: bytes) -> tuple[str, bytes]:
    if isinstance(key, ec.EllipticCurvePrivateKey):
        _, alg, hash_cls = _EC_ALGORITHMS[key.curve.name]
        r, s = decode_dss_signature(key.sign(data, ec.ECDSA(hash_cls())))
        size = _coordinate_size(key.curve)
        return alg, _int_bytes(r, size) + _int_bytes(s, size)
    return _RSA_ALGORITHM, key.sign(data, padding.PKCS1v15(), hashes.SHA256())


def sign_manifest(
    payload: bytes,
    key: SigningKey,
    timestamp: datetime.datetime | None = None,
) -> bytes:
    """Return *payload* with a ``signatures`` array produced by *key*."""
    format_length, tail = _split_payload(payload)
    if timestamp is None:
        timestamp = datetime.datetime.now(datetime.timezone.utc)

    protected = {
        "formatLength": format_length,
        "formatTail": _b64url(tail),
        "time": timestamp.astimezone(datetime.timezone.utc).strftime(_TIME_FORMAT),
    }
    protected_b64 = _b64url(json.dumps(protected, sort_keys=True, separators=(",", ":")).encode("utf-8"))
    signing_input = f"{protected_b64}.{_b64url(payload)}".encode("ascii")

    try:
        alg, signature = _sign_bytes(key, signing_input)
        jwk = public_jwk(key.public_key())
    except (ValueError, TypeError, KeyError, UnsupportedAlgorithm) as exc:
        raise SigningError(f"signing failed: {exc}") from exc

    signatures = [
        {
            "header": {"jwk": jwk, "alg": alg},
            "signature": _b64url(signature),
            "protected": protected_b64,
        }
    ]
    indent = _detect_indent(payload)
    rendered = json.dumps(signatures, indent=indent).replace("\n", "\n" + indent)
    envelope = f',\n{indent}"signatures": {rendered}'.encode("utf-8")
    return payload[:format_length] + envelope + tail


# ------------------------------------------------------------------
# Verification
# ------------------------------------------------------------------


def _verify_bytes(jwk: dict[str, Any], alg: str, signature: bytes, data: bytes) -> None:
    kty = jwk["kty"]
    if kty == "EC":
        curve = _EC_CURVES[jwk["crv"]]()
        _, expected_alg, hash_cls = _EC_ALGORITHMS[curve.name]
        if alg != expected_alg:
            raise SignatureVerificationError(f"algorithm {alg} does not match curve {jwk['crv']}")
        public_key = ec.EllipticCurvePublicNumbers(
            int.from_bytes(_b64url_decode(jwk["x"]), "big"),
            int.from_bytes(_b64url_decode(jwk["y"]), "big"),
            curve,
        ).public_key()
        size = _coordinate_size(curve)
        if len(signature) != 2 * size:
            raise SignatureVerificationError("signature has the wrong length")
        der = encode_dss_signature(
            int.from_bytes(signature[:size], "big"),
            int.from_bytes(signature[size:], "big"),
        )
        public_key.verify(der, data, ec.ECDSA(hash_cls()))
    elif kty == "RSA":
        if alg != _RSA_ALGORITHM:
            raise SignatureVerificationError(f"unsupported RSA algorithm {alg}")
        public_key = rsa.RSAPublicNumbers(
            int.from_bytes(_b64url_decode(jwk["e"]), "big"),
            int.from_bytes(_b64url_decode(jwk["n"]), "big"),
        ).public_key()
        public_key.verify(signature, data, padding.PKCS1v15(), hashes.SHA256())
    else:
        raise SignatureVerificationError(f"unsupported key type {kty!r}")


def verify_signed_manifest(data: bytes) -> bytes:
    """
    Check every signature on a signed manifest.

    Returns the signed payload (the manifest without its ``signatures``).
    """
    try:
        document = json.loads(data)
    except (ValueError, RecursionError) as exc:
        raise SignatureVerificationError(f"signed manifest is not valid JSON: {exc}") from exc
    signatures = document.get("signatures") if isinstance(document, dict) else None
    if not signatures or not isinstance(signatures, list):
        raise SignatureVerificationError("manifest carries no signatures")

    payloads: list[bytes] = []
    for index, entry in enumerate(signatures):
        try:
            protected_b64 = entry["protected"]
            protected = json.loads(_b64url_decode(protected_b64))
            candidate = data[: protected["formatLength"]] + _b64url_decode(protected["formatTail"])
            header = entry["header"]
            signature = _b64url_decode(entry["signature"])
            signing_input = f"{protected_b64}.{_b64url(candidate)}".encode("ascii")
            _verify_bytes(header["jwk"], header["alg"], signature, signing_input)
        except InvalidSignature as exc:
            raise SignatureVerificationError(f"signature {index} does not match the manifest") from exc
        except (KeyError, TypeError, ValueError) as exc:
            raise SignatureVerificationError(f"signature {index} is malformed: {exc}") from exc
        if payloads and candidate != payloads[0]:
            raise SignatureVerificationError("signatures cover different payloads")
        payloads.append(candidate)
        logger.debug("Signature %d verified with key %s", index, header["jwk"].get("kid", "?"))

    return payloads[0]
