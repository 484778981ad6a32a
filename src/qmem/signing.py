"""
Ed25519 signatures over a container's digest.

The content hash already proves the logs are intact; a signature adds who
vouched for them. It covers the container id and content hash, so any
mutation (which changes the hash) invalidates it, and the container drops it.

    signing_key = nacl.signing.SigningKey.generate()
    sign_container(container, signing_key)
    verify_container_signature(container, signing_key.verify_key)
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Union

import nacl.exceptions
import nacl.signing

from .errors import SignatureMismatch

if TYPE_CHECKING:
    from .kernel.container import Container

VerifyKeyLike = Union[nacl.signing.VerifyKey, bytes, str]


def _signed_message(container_id: str, content_hash: str) -> bytes:
    return f"{container_id}\n{content_hash}".encode("utf-8")


def _coerce_verify_key(key: VerifyKeyLike) -> nacl.signing.VerifyKey:
    if isinstance(key, nacl.signing.VerifyKey):
        return key
    if isinstance(key, str):
        key = bytes.fromhex(key)
    return nacl.signing.VerifyKey(key)


def sign_container(container: "Container", signing_key: nacl.signing.SigningKey) -> str:
    """
    Sign the container's current digest and store the signature in its header.

    Returns:
        The hex-encoded signature
    """
    header = container.header
    signed = signing_key.sign(_signed_message(header.container_id, header.content_hash))
    signature = signed.signature.hex()
    container.apply_signature(signature, bytes(signing_key.verify_key).hex())
    return signature


def verify_container_signature(
    container: "Container",
    verify_key: VerifyKeyLike | None = None,
    origin: Path | str | None = None,
) -> None:
    """
    Check the header signature.

    Without ``verify_key`` the signer key recorded in the header is used,
    which proves integrity but not identity.

    Raises:
        SignatureMismatch: If the signature is missing, malformed, made by a
            different key, or made over a different digest
    """
    header = container.header
    if not header.signature or not header.signer_key:
        raise SignatureMismatch("container is not signed", container_id=header.container_id, path=origin)

    try:
        key = _coerce_verify_key(verify_key if verify_key is not None else header.signer_key)
        if verify_key is not None and bytes(key).hex() != header.signer_key:
            raise SignatureMismatch(
                "container was signed by a different key",
                container_id=header.container_id,
                path=origin,
            )
        key.verify(
            _signed_message(header.container_id, header.content_hash),
            bytes.fromhex(header.signature),
        )
    except (ValueError, TypeError, nacl.exceptions.BadSignatureError) as e:
        raise SignatureMismatch(
            f"signature does not verify: {e}", container_id=header.container_id, path=origin
        ) from e
